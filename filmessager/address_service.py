"""Management of sending addresses and their settings."""

from __future__ import annotations

import logging
from typing import Any

from .models import AddressInfo, AddressState

log = logging.getLogger(__name__)


class AddressNotExistsError(LookupError):
    """Raised when an operation names an address that is not stored."""

    def __init__(self, message: str = "address not exists"):
        super().__init__(message)


def _parse_amount(text: str, what: str) -> int:
    if not text:
        return 0
    try:
        return int(text, 10)
    except ValueError as err:
        raise ValueError(f"parsing {what} failed {err}") from err


class AddressService:
    """Address operations over a repository, a wallet gateway and an auth service.

    The repository exposes ``address_repo`` and a ``transaction()`` context
    manager yielding a repository with the same shape.
    """

    def __init__(self, repo: Any, wallet_client: Any, auth_client: Any):
        self.repo = repo
        self.wallet_client = wallet_client
        self.auth_client = auth_client

    def save_address(self, address: AddressInfo) -> str:
        """Store a new address and return its id; raises ValueError if it exists."""
        with self.repo.transaction() as tx:
            if tx.address_repo.has_address(address.addr):
                raise ValueError("address already exists")
            tx.address_repo.save_address(address)
        return address.id

    def update_nonce(self, addr: str, nonce: int) -> None:
        self.repo.address_repo.update_nonce(addr, nonce)

    def get_address(self, addr: str) -> AddressInfo:
        return self.repo.address_repo.get_address(addr)

    def wallet_has(self, addr: str, account: str) -> bool:
        """Whether *account* is bound to *addr* and an online wallet holds its key."""
        accounts = self.accounts_of_signer(addr)
        if account not in accounts:
            return False
        return bool(self.wallet_client.wallet_has(addr, accounts))

    def has_address(self, addr: str) -> bool:
        return bool(self.repo.address_repo.has_address(addr))

    def list_address(self) -> list[AddressInfo]:
        return list(self.repo.address_repo.list_address())

    def list_active_address(self) -> list[AddressInfo]:
        return list(self.repo.address_repo.list_active_address())

    def delete_address(self, addr: str) -> None:
        self.repo.address_repo.del_address(addr)

    def forbid_address(self, addr: str) -> None:
        self.repo.address_repo.update_state(addr, AddressState.FORBIDDEN)
        log.info("forbidden address %s success", addr)

    def activate_address(self, addr: str) -> None:
        self.repo.address_repo.update_state(addr, AddressState.ALIVE)
        log.info("active address %s success", addr)

    def set_select_msg_num(self, addr: str, num: int) -> None:
        self.repo.address_repo.update_select_msg_num(addr, num)
        log.info("set select msg num: %s %d", addr, num)

    def set_fee_params(
        self,
        addr: str,
        gas_over_estimation: float,
        gas_over_premium: float,
        max_fee: str,
        gas_fee_cap: str,
        base_fee: str,
    ) -> None:
        """Update fee settings; amounts are decimal strings, empty meaning zero."""
        if not self.repo.address_repo.has_address(addr):
            raise AddressNotExistsError()
        max_fee_value = _parse_amount(max_fee, "maxfee")
        gas_fee_cap_value = _parse_amount(gas_fee_cap, "gas-feecap")
        base_fee_value = _parse_amount(base_fee, "basefee")
        self.repo.address_repo.update_fee_params(
            addr, gas_over_estimation, gas_over_premium, max_fee_value, gas_fee_cap_value, base_fee_value
        )

    def active_addresses(self) -> set[str]:
        """Addresses currently alive; empty if the repository cannot be read."""
        try:
            infos = self.list_active_address()
        except Exception as err:
            log.error("list address %s", err)
            return set()
        return {info.addr for info in infos}

    def accounts_of_signer(self, addr: str) -> list[str]:
        """Names of the accounts bound to the signer address."""
        return [user.name for user in self.auth_client.get_user_by_signer(addr)]