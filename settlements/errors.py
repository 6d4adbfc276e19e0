from __future__ import annotations


class SettlementError(Exception):
    """Base class for errors surfaced to the operator."""

    level = "error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class FiltersIncompleteError(SettlementError):
    level = "warning"
    status_code = 400


class InvalidSpecialRulesError(SettlementError):
    level = "warning"
    status_code = 400

    def __init__(self, message: str, plan_id: int | None = None) -> None:
        super().__init__(message)
        self.plan_id = plan_id


class NoActivePlansError(SettlementError):
    level = "warning"
    status_code = 422


class ReconcilerBusyError(SettlementError):
    level = "warning"
    status_code = 409


class NoDraftError(SettlementError):
    level = "warning"
    status_code = 409


class UnknownHandleError(SettlementError):
    level = "warning"
    status_code = 404


class BackendError(SettlementError):
    status_code = 502

    def __init__(self, message: str, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class PageFetchError(BackendError):
    def __init__(self, handle: str, page_index: int, message: str, upstream_status: int | None = None) -> None:
        super().__init__(message, upstream_status=upstream_status)
        self.handle = handle
        self.page_index = page_index


class PageOutOfRangeError(SettlementError):
    level = "warning"
    status_code = 404
