from sqlalchemy import select

from tradepay.models import Item, User


class Catalog:
    """Read-only lookups into the user partition.

    Items and users are owned by the catalog service; the settlement core
    only resolves ids it was handed.
    """

    def __init__(self, stores):
        self.stores = stores

    def find_item(self, item_id):
        if not item_id:
            return None
        with self.stores.user() as session:
            return session.scalar(select(Item).where(Item.id == item_id, Item.is_deleted.is_(False)))

    def find_user(self, user_id):
        if not user_id:
            return None
        with self.stores.user() as session:
            return session.scalar(select(User).where(User.id == user_id, User.is_deleted.is_(False)))
