from __future__ import annotations


class WxConsensusError(Exception):
    """Base class for errors raised by the service."""


class ModelDataError(WxConsensusError):
    """A single model's payload could not be used. Reported, never propagated past the fan-out."""

    def __init__(self, model_name: str, reason: str):
        super().__init__(reason)
        self.model_name = model_name
        self.reason = reason


class UpstreamError(WxConsensusError):
    """Upstream weather API answered with a non-success response."""

    def __init__(self, url: str, status_code: int, reason: str):
        super().__init__(f"{status_code} from {url}: {reason}")
        self.url = url
        self.status_code = status_code
        self.reason = reason


class StorageError(WxConsensusError):
    """Durable storage failed. Aborts the current cycle."""


class LeaseUnavailableError(WxConsensusError):
    """Another replica currently holds the leader lease."""

    def __init__(self, lease_id: str, holder_id: str | None):
        super().__init__(f"lease '{lease_id}' is held by {holder_id or 'another instance'}")
        self.lease_id = lease_id
        self.holder_id = holder_id
