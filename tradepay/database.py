from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# One declarative base per partition: tables of different partitions never
# share a metadata, an engine or a transaction.
TradingBase = declarative_base()
TokenBase = declarative_base()
UserBase = declarative_base()

PARTITIONS = {
    "trading": TradingBase,
    "token": TokenBase,
    "user": UserBase,
}


def make_engine(url):
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {}
    )


class StoreRegistry:
    """Engines and session factories for the trading, token and user stores.

    Built once at startup and handed to the components that need it.
    Cross-partition lookups go through separate sessions by id.
    """

    def __init__(self, urls):
        missing = [name for name in PARTITIONS if not urls.get(name)]
        if missing:
            raise RuntimeError(f"Database URL is not set for: {', '.join(missing)}")

        self.engines = {name: make_engine(urls[name]) for name in PARTITIONS}
        self._sessions = {
            name: sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
            for name, engine in self.engines.items()
        }

    def session(self, name):
        return self._sessions[name]()

    def trading(self):
        return self.session("trading")

    def token(self):
        return self.session("token")

    def user(self):
        return self.session("user")

    def create_all(self):
        import tradepay.models  # noqa: F401  registers the tables

        for name, base in PARTITIONS.items():
            base.metadata.create_all(bind=self.engines[name])

    def drop_all(self):
        for name, base in PARTITIONS.items():
            base.metadata.drop_all(bind=self.engines[name])

    def dispose(self):
        for engine in self.engines.values():
            engine.dispose()
