from decimal import Decimal
from typing import List, Optional
import structlog

from exceptions import PersistenceError
from models import Account, Item, ListedItem, LedgerErrorCode, LedgerResult
from repositories import AccountRegistry, LedgerStore

# Configure structured logging
logger = structlog.get_logger()


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def apply_transfer(registry: AccountRegistry, buyer_name: str, seller_name: str, item_id: int) -> AccountRegistry:
    """Return the registry that results from moving an item to the buyer.

    The given registry is left untouched. Callers validate the transfer
    beforehand.
    """
    after = registry.copy()
    buyer = after.get(buyer_name)
    seller = after.get(seller_name)

    item_index = next(i for i, item in enumerate(seller.items) if item.id == item_id)
    item = seller.items.pop(item_index)

    buyer.balance -= item.price
    seller.balance += item.price
    buyer.items.append(item)
    return after


class LedgerService:
    def __init__(self, store: LedgerStore):
        self.store = store

    async def register(self, user_name: str, name: str, starting_balance) -> LedgerResult:
        """Create an account with an empty item list."""

        logger.info(
            "Registering account",
            user_name=user_name,
            starting_balance=str(starting_balance)
        )

        async with self.store.lock:
            if self.store.registry.find_index(user_name) is not None:
                return self._reject(
                    LedgerErrorCode.account_already_exists,
                    "Account already exists",
                    user_name=user_name
                )

            registry = self.store.registry.copy()
            registry.create(user_name, name, _to_decimal(starting_balance))
            await self._commit(registry, "register")
            account = self.store.registry.get(user_name)

        logger.info("Account registered", user_name=user_name)
        return LedgerResult.ok(account=account)

    async def lookup_account(self, user_name: str) -> Optional[Account]:
        return self.store.registry.get(user_name)

    async def list_items(self) -> List[ListedItem]:
        """Every item in the ledger with its current owner, ordered by id."""
        listed = []
        for item_id in self.store.index.ids():
            found = self.store.find_item(item_id)
            if found is not None:
                owner, item = found
                listed.append(ListedItem.from_item(item, owner.user_name))
        return listed

    async def get_item(self, item_id: int) -> Optional[ListedItem]:
        found = self.store.find_item(item_id)
        if found is None:
            return None
        owner, item = found
        return ListedItem.from_item(item, owner.user_name)

    async def add_item(self, owner_name: str, item_name: str, price) -> LedgerResult:
        """Create a new item owned by ``owner_name``."""

        logger.info(
            "Adding item",
            owner=owner_name,
            item_name=item_name,
            price=str(price)
        )

        async with self.store.lock:
            if self.store.registry.get(owner_name) is None:
                return self._reject(
                    LedgerErrorCode.account_not_found,
                    "Account not found",
                    user_name=owner_name
                )

            item_id = self.store.allocator.generate_id(self.store.index)
            if item_id is None:
                return self._reject(
                    LedgerErrorCode.id_space_exhausted,
                    "Too many items in database, no more room for new ids",
                    user_name=owner_name,
                    items_count=len(self.store.index)
                )

            item = Item(id=item_id, name=item_name, price=_to_decimal(price))
            registry = self.store.registry.copy()
            registry.get(owner_name).items.append(item)
            await self._commit(registry, "add_item")
            account = self.store.registry.get(owner_name)

        logger.info("Item added", owner=owner_name, item_id=item_id)
        return LedgerResult.ok(account=account, item=item)

    async def transfer(self, buyer_name: str, item_id: int) -> LedgerResult:
        """Buy an item: move it to ``buyer_name`` and pay its price to the seller.

        Every check runs before the ledger changes. On success the buyer's
        debit, the seller's credit and the change of ownership are saved and
        installed in a single commit.
        """

        logger.info("Processing transfer", buyer=buyer_name, item_id=item_id)

        async with self.store.lock:
            buyer = self.store.registry.get(buyer_name)
            if buyer is None:
                return self._reject(
                    LedgerErrorCode.account_not_found,
                    "Account not found",
                    user_name=buyer_name
                )

            found = self.store.find_item(item_id)
            if found is None:
                return self._reject(
                    LedgerErrorCode.item_not_found,
                    "Item not found",
                    item_id=item_id
                )
            seller, item = found

            if seller.user_name == buyer.user_name:
                return self._reject(
                    LedgerErrorCode.self_purchase,
                    "Buyer already owns this item",
                    user_name=buyer_name,
                    item_id=item_id
                )

            if buyer.balance < item.price:
                return self._reject(
                    LedgerErrorCode.insufficient_funds,
                    "Insufficient funds",
                    user_name=buyer_name,
                    item_id=item_id,
                    current_balance=str(buyer.balance),
                    price=str(item.price)
                )

            registry = apply_transfer(self.store.registry, buyer.user_name, seller.user_name, item_id)
            await self._commit(registry, "transfer")
            buyer_after = self.store.registry.get(buyer_name)

        logger.info(
            "Transfer processed successfully",
            buyer=buyer_name,
            seller=seller.user_name,
            item_id=item_id,
            price=str(item.price),
            new_balance=str(buyer_after.balance)
        )
        return LedgerResult.ok(account=buyer_after, item=item)

    async def delete_account(self, user_name: str) -> LedgerResult:
        """Remove an account together with every item it owns."""

        logger.info("Deleting account", user_name=user_name)

        async with self.store.lock:
            if self.store.registry.find_index(user_name) is None:
                return self._reject(
                    LedgerErrorCode.account_not_found,
                    "That user does not exist",
                    user_name=user_name
                )

            registry = self.store.registry.copy()
            removed = registry.delete(user_name)
            await self._commit(registry, "delete_account")

        logger.info("Account deleted", user_name=user_name, items_removed=len(removed.items))
        return LedgerResult.ok(account=removed)

    async def get_accounts_count(self) -> int:
        return len(self.store.registry)

    async def get_items_count(self) -> int:
        return len(self.store.index)

    async def _commit(self, registry: AccountRegistry, operation: str) -> None:
        try:
            await self.store.commit(registry)
        except PersistenceError:
            logger.error("Failed to persist ledger", operation=operation, exc_info=True)
            raise

    def _reject(self, error: LedgerErrorCode, detail: str, **context) -> LedgerResult:
        logger.warning(detail, error_code=error.value, **context)
        return LedgerResult.fail(error, detail)


# Factory function for dependency injection
def get_ledger_service(store: LedgerStore) -> LedgerService:
    return LedgerService(store)
