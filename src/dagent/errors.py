from __future__ import annotations


class ProviderError(RuntimeError):
    """A provider run ended without usable output."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProcessSpawnError(ProviderError):
    pass


class ProcessExitError(ProviderError):
    def __init__(self, message: str, *, provider: str | None = None, returncode: int | None = None) -> None:
        super().__init__(message, provider=provider)
        self.returncode = returncode


class QuotaExceededError(ProviderError):
    pass


class PermissionRejectedError(ProviderError):
    """Elevated permission mode refused by the agent binary (e.g. bypass mode under root)."""


class DispatchError(ValueError):
    pass


class MemoryStoreError(RuntimeError):
    pass
