"""Error taxonomy for quoting, routing and swap execution."""

from typing import Any, Optional


class DexError(Exception):
    """Base class for all aggregator errors.

    Carries the ID of the adapter that raised it when one is known, so
    batch callers can attribute a failure without parsing messages.
    """

    def __init__(self, message: str, dex_id: Optional[str] = None):
        self.dex_id = dex_id
        prefix = f"[{dex_id}] " if dex_id else ""
        super().__init__(f"{prefix}{message}")


class IncompatibleStandard(DexError):
    """Token and DEX share no transfer standard."""

    pass


class AmountTooSmall(DexError):
    """Input amount does not cover the transfer fees it incurs."""

    pass


class NoPoolForPair(DexError):
    """Adapter cannot find a pool or route for the token pair."""

    pass


class AdapterNotRegistered(DexError):
    """A dexId was referenced that the aggregator does not know."""

    pass


class NoAdaptersRegistered(AdapterNotRegistered):
    """The aggregator registry is empty."""

    def __init__(self):
        super().__init__("No DEX adapters are registered")


class DuplicateAdapter(AdapterNotRegistered):
    """An adapter with the same ID is already registered."""

    pass


class QuoteFailed(DexError):
    """The remote quote call was rejected."""

    pass


class SwapFailed(DexError):
    """The remote swap call was rejected."""

    pass


class ClaimFailed(DexError):
    """A post-swap claim of output proceeds failed."""

    pass


class PendingTransferNotFound(DexError):
    """No pending-transfer record exists under the requested key."""

    pass


class BackendError(DexError):
    """A backend RPC call returned an error variant or could not be completed."""

    def __init__(self, method: str, detail: Any, dex_id: Optional[str] = None):
        self.method = method
        self.detail = detail
        super().__init__(f"{method} failed: {detail}", dex_id=dex_id)
