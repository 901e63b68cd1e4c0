# medfi_app/wallet.py
"""Wallet connection state.

Push-style events (connect, account change, disconnect) and poll results all go
through ``transition`` so the state can be driven without timers.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from web3 import Account

from medfi_app.errors import ValidationError, WalletError

logger = logging.getLogger(__name__)


class WalletStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class WalletState:
    status: WalletStatus = WalletStatus.DISCONNECTED
    address: str = None

    @property
    def connected(self):
        return self.status is WalletStatus.CONNECTED

    def to_dict(self):
        return {"status": self.status.value, "address": self.address}

    @classmethod
    def from_dict(cls, data):
        if not data:
            return DISCONNECTED
        return cls(WalletStatus(data.get("status", "disconnected")), data.get("address"))


DISCONNECTED = WalletState()


# --- Events ---

@dataclass(frozen=True)
class ConnectRequested:
    pass


@dataclass(frozen=True)
class ConnectSucceeded:
    address: str


@dataclass(frozen=True)
class ConnectFailed:
    reason: str = ""


@dataclass(frozen=True)
class AccountChanged:
    address: str


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class PollResult:
    connected: bool
    address: str = None


def transition(state, event):
    """Pure state transition for wallet events."""
    if isinstance(event, ConnectRequested):
        if state.connected:
            return state
        return WalletState(WalletStatus.CONNECTING)
    if isinstance(event, ConnectSucceeded):
        return WalletState(WalletStatus.CONNECTED, event.address)
    if isinstance(event, (ConnectFailed, Disconnected)):
        return DISCONNECTED
    if isinstance(event, AccountChanged):
        # The wallet only reports account changes while connected
        return WalletState(WalletStatus.CONNECTED, event.address)
    if isinstance(event, PollResult):
        if event.connected and event.address:
            if state.connected and state.address == event.address:
                return state
            return WalletState(WalletStatus.CONNECTED, event.address)
        if state.status is WalletStatus.CONNECTING:
            # A connect is in flight; an empty poll must not cancel it
            return state
        return DISCONNECTED
    raise TypeError(f"Unknown wallet event: {event!r}")


@dataclass(frozen=True)
class WalletAccount:
    """A connected signing account."""

    address: str
    private_key: str

    @classmethod
    def from_key(cls, private_key):
        private_key = (private_key or "").strip()
        if not private_key:
            raise ValidationError("Private key is required.")
        # Prepend 0x if missing (basic user convenience)
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        try:
            account = Account.from_key(private_key)
        except Exception as e:
            raise ValidationError("Invalid private key format or length.") from e
        return cls(account.address, private_key)

    def __repr__(self):
        # Never print the key
        return f"WalletAccount(address={self.address!r})"


class WalletHolder:
    """Owns a WalletState and the signing account behind it."""

    def __init__(self, state=DISCONNECTED):
        self.state = state
        self.account = None
        self._listeners = []

    def subscribe(self, listener):
        self._listeners.append(listener)

    def dispatch(self, event):
        previous = self.state
        self.state = transition(previous, event)
        if self.state != previous:
            logger.info("Wallet %s -> %s", previous.status.value, self.state.status.value)
            for listener in list(self._listeners):
                listener(self.state)
        if not self.state.connected:
            self.account = None
        return self.state

    def connect(self, private_key):
        self.dispatch(ConnectRequested())
        try:
            account = WalletAccount.from_key(private_key)
        except ValidationError as e:
            self.dispatch(ConnectFailed(str(e)))
            raise
        self.account = account
        self.dispatch(ConnectSucceeded(account.address))
        return account

    def disconnect(self):
        self.dispatch(Disconnected())

    def poll(self, probe):
        """Merges a poll-driven check; ``probe()`` returns (connected, address)."""
        try:
            connected, address = probe()
        except Exception as e:
            logger.warning("Wallet connection check failed: %s", e)
            connected, address = False, None
        if connected and self.state.connected and address != self.state.address:
            # The wallet now reports a different account than the one we recorded
            connected = False
        return self.dispatch(PollResult(connected, address))

    def require_account(self):
        if not self.state.connected or self.account is None:
            raise WalletError("Wallet not connected")
        return self.account
