"""Account state and trading authorization.

The registry is the single source of truth for which accounts exist, what the
broker last reported about them, and whether each may trade.  Authorization
is two-layered: a master kill switch (global, off until explicitly enabled)
and a per-account ``trading_enabled`` flag.  Both must be on.

All mutations are synchronous and run on the event loop thread, so no two of
them interleave.  Instances are owned by the orchestrator and passed to the
components that need them.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from models.account import MAX_RECENT_FILLS, Account, Fill, Position
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("account_registry")


class AccountRegistry:
    """Per-account state plus the master/per-account kill switches."""

    def __init__(self) -> None:
        self._accounts: dict[int, Account] = {}
        self._master_enabled = False

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    def initialize_accounts(self, account_list: Iterable[Any]) -> list[Account]:
        """Replace the registry with ``account_list``.

        Every entry starts with trading enabled regardless of what the
        source supplied.
        """
        accounts: dict[int, Account] = {}
        for raw in account_list:
            data = raw.to_wire() if isinstance(raw, Account) else dict(raw)
            data["tradingEnabled"] = True
            data.pop("trading_enabled", None)
            account = Account.model_validate(data)
            accounts[account.id] = account
            logger.info("Account initialized", account_id=account.id, name=account.name)

        self._accounts = accounts
        logger.info("Accounts loaded", count=len(accounts))
        return self.get_all_accounts()

    def get_account(self, account_id: int) -> Optional[Account]:
        return self._accounts.get(account_id)

    def get_all_accounts(self) -> list[Account]:
        return list(self._accounts.values())

    def __len__(self) -> int:
        return len(self._accounts)

    def update_account(self, account_id: int, updates: dict[str, Any]) -> bool:
        """Merge ``updates`` into the stored record. Unknown ids are a no-op."""
        account = self._accounts.get(account_id)
        if account is None:
            logger.warning("Cannot update unknown account", account_id=account_id)
            return False
        safe_updates = {
            key: value
            for key, value in updates.items()
            if Account.wire_key(key) not in ("id", "tradingEnabled")
        }
        try:
            self._accounts[account_id] = account.merged(safe_updates)
        except ValueError as exc:
            logger.warning("Rejected account update", account_id=account_id, error=str(exc))
            return False
        logger.debug("Account updated", account_id=account_id, fields=sorted(safe_updates))
        return True

    def update_pnl(self, account_id: int, pnl: float) -> bool:
        return self.update_account(account_id, {"pnl": pnl})

    def set_positions(self, account_id: int, positions: list[Position]) -> bool:
        """Replace the open-position list wholesale."""
        account = self._accounts.get(account_id)
        if account is None:
            logger.warning("Cannot set positions for unknown account", account_id=account_id)
            return False
        self._accounts[account_id] = account.model_copy(
            update={"open_positions": list(positions), "last_update": utcnow()}
        )
        return True

    def add_fill(self, account_id: int, fill: Fill) -> bool:
        """Prepend a fill, keeping only the most recent ``MAX_RECENT_FILLS``."""
        account = self._accounts.get(account_id)
        if account is None:
            logger.warning("Cannot add fill to unknown account", account_id=account_id)
            return False
        fills = [fill, *account.recent_fills][:MAX_RECENT_FILLS]
        self._accounts[account_id] = account.model_copy(
            update={"recent_fills": fills, "last_update": utcnow()}
        )
        return True

    def cumulative_pnl(self) -> float:
        return sum(account.pnl or 0.0 for account in self._accounts.values())

    # ------------------------------------------------------------------
    # Trading permission
    # ------------------------------------------------------------------

    @property
    def master_enabled(self) -> bool:
        return self._master_enabled

    def set_master_kill_switch(self, enabled: bool) -> None:
        self._master_enabled = bool(enabled)
        logger.info(
            "Master kill switch changed",
            trading="ENABLED" if self._master_enabled else "DISABLED",
        )

    def set_account_trading(self, account_id: int, enabled: bool) -> bool:
        account = self._accounts.get(account_id)
        if account is None:
            logger.warning("Cannot set trading for unknown account", account_id=account_id)
            return False
        self._accounts[account_id] = account.model_copy(update={"trading_enabled": bool(enabled)})
        logger.info(
            "Account trading changed",
            account_id=account_id,
            trading="ENABLED" if enabled else "DISABLED",
        )
        return True

    def can_trade(self, account_id: int) -> bool:
        """True iff the master switch is on AND the account's own flag is on."""
        if not self._master_enabled:
            return False
        account = self._accounts.get(account_id)
        if account is None:
            logger.warning("Cannot check trading for unknown account", account_id=account_id)
            return False
        return account.trading_enabled

    def get_trading_status(self) -> dict[str, Any]:
        return {
            "masterEnabled": self._master_enabled,
            "accounts": {
                str(account_id): {
                    "enabled": account.trading_enabled,
                    "canTrade": self._master_enabled and account.trading_enabled,
                }
                for account_id, account in self._accounts.items()
            },
        }

    def reset(self) -> None:
        """Clear all accounts and block trading. Shutdown/reinit only."""
        self._accounts.clear()
        self._master_enabled = False
        logger.info("Account registry reset")
