import asyncio
import random
from copy import deepcopy
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Tuple

import structlog

from models import Account, Item, ITEM_ID_CAPACITY
from storage import AccountStorage

logger = structlog.get_logger()


class AccountRegistry:
    """Accounts keyed by unique user name, kept in registration order."""

    def __init__(self, accounts: Optional[List[Account]] = None):
        self.accounts: List[Account] = list(accounts or [])

    def find_index(self, user_name: str) -> Optional[int]:
        for idx, account in enumerate(self.accounts):
            if account.user_name == user_name:
                return idx
        return None

    def get(self, user_name: str) -> Optional[Account]:
        idx = self.find_index(user_name)
        if idx is None:
            return None
        return self.accounts[idx]

    def create(self, user_name: str, name: str, balance: Decimal) -> bool:
        if self.find_index(user_name) is not None:
            return False
        self.accounts.append(Account(user_name=user_name, name=name, balance=balance, items=[]))
        return True

    def delete(self, user_name: str) -> Optional[Account]:
        idx = self.find_index(user_name)
        if idx is None:
            return None
        return self.accounts.pop(idx)

    def copy(self) -> "AccountRegistry":
        return AccountRegistry(deepcopy(self.accounts))

    def __iter__(self) -> Iterator[Account]:
        return iter(self.accounts)

    def __len__(self) -> int:
        return len(self.accounts)


class ItemIndex:
    """Item id -> owner user name, derived from the accounts' item lists."""

    def __init__(self, owners: Optional[Dict[int, str]] = None):
        self.owners: Dict[int, str] = dict(owners or {})

    @classmethod
    def from_accounts(cls, accounts) -> "ItemIndex":
        owners = {}
        for account in accounts:
            for item in account.items:
                owners[item.id] = account.user_name
        return cls(owners)

    def owner_of(self, item_id: int) -> Optional[str]:
        return self.owners.get(item_id)

    def ids(self) -> List[int]:
        return sorted(self.owners)

    def __contains__(self, item_id) -> bool:
        return item_id in self.owners

    def __len__(self) -> int:
        return len(self.owners)


class IdAllocator:
    """Hands out unused item ids by drawing random candidates.

    The id space is tiny, so rejection sampling terminates quickly while
    there is any free id left.
    """

    def __init__(self, capacity: int = ITEM_ID_CAPACITY, rng: Optional[random.Random] = None):
        self.capacity = capacity
        self._rng = rng or random.Random()

    def generate_id(self, index: ItemIndex) -> Optional[int]:
        while len(index) < self.capacity:
            candidate = self._rng.randrange(self.capacity)
            if candidate not in index:
                return candidate
        return None


class LedgerStore:
    """Owns the account registry, the item index and their backing storage.

    Mutations are made on a copy of the registry and installed with
    ``commit``, which saves first and then replaces the registry and index
    together. Writers must hold ``lock`` from validation through commit.
    """

    def __init__(self, storage: AccountStorage, allocator: Optional[IdAllocator] = None):
        self.storage = storage
        self.allocator = allocator or IdAllocator()
        self.registry = AccountRegistry()
        self.index = ItemIndex()
        self.lock = asyncio.Lock()

    def load(self) -> None:
        self._install(AccountRegistry(self.storage.load()))

    async def commit(self, registry: AccountRegistry) -> None:
        # Save in a worker thread, install on the event loop
        await asyncio.to_thread(self.storage.save, registry.accounts)
        self._install(registry)

    def find_item(self, item_id: int) -> Optional[Tuple[Account, Item]]:
        """Resolve an item id to its owning account and the item itself."""
        owner_name = self.index.owner_of(item_id)
        if owner_name is None:
            return None
        owner = self.registry.get(owner_name)
        if owner is None:
            return None
        for item in owner.items:
            if item.id == item_id:
                return owner, item
        return None

    def _install(self, registry: AccountRegistry) -> None:
        index = ItemIndex.from_accounts(registry)
        self.registry, self.index = registry, index
        logger.debug("Ledger state installed", accounts_count=len(registry), items_count=len(index))
