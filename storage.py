import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Union

import simplejson
import structlog

from exceptions import PersistenceIOError, PersistenceParseError
from models import Account

logger = structlog.get_logger()


class AccountStorage(ABC):
    @abstractmethod
    def load(self) -> List[Account]:
        """Return the persisted account collection."""
        pass

    @abstractmethod
    def save(self, accounts: List[Account]) -> None:
        """Replace the persisted account collection."""
        pass


class JsonFileStorage(AccountStorage):
    """Keeps the whole account collection in a single JSON file.

    Every save rewrites the file in full. The new content is written to a
    temporary file next to the target and renamed over it, so readers only
    ever see the previous or the new collection.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> List[Account]:
        """Read the account collection, creating an empty file on first run."""
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            logger.info("Database file does not exist, creating empty file", path=str(self.path))
            self.save([])
            return []
        except OSError as e:
            raise PersistenceIOError(self.path, str(e)) from e

        try:
            data = simplejson.loads(raw.decode("utf-8"), use_decimal=True)
        except ValueError as e:
            raise PersistenceParseError(self.path, f"invalid JSON: {e}") from e

        if not isinstance(data, list):
            raise PersistenceParseError(self.path, "expected a JSON array of accounts")

        try:
            accounts = [Account(**record) for record in data]
        except (TypeError, ValueError) as e:
            raise PersistenceParseError(self.path, f"invalid account record: {e}") from e

        self._check_unique(accounts)

        logger.info(
            "Database loaded",
            path=str(self.path),
            accounts_count=len(accounts),
            items_count=sum(len(account.items) for account in accounts)
        )
        return accounts

    def save(self, accounts: List[Account]) -> None:
        # Decimals are written as exact JSON numbers
        payload = simplejson.dumps(
            [account.dict() for account in accounts],
            indent=4,
            use_decimal=True
        )

        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=self.path.name + ".",
                suffix=".tmp",
                dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise PersistenceIOError(self.path, str(e)) from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

        logger.debug("Database saved", path=str(self.path), accounts_count=len(accounts))

    def _check_unique(self, accounts: List[Account]) -> None:
        user_names = set()
        item_ids = set()
        for account in accounts:
            if account.user_name in user_names:
                raise PersistenceParseError(self.path, f"duplicate user name {account.user_name!r}")
            user_names.add(account.user_name)
            for item in account.items:
                if item.id in item_ids:
                    raise PersistenceParseError(self.path, f"duplicate item id {item.id}")
                item_ids.add(item.id)
