from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "locator_not_found",
        "category_not_found",
        "unreachable",
        "search_cost_exceeded",
        "malformed_record",
        "graph_build_failure",
        "turn_graph_build_failure",
        "network_asset_unavailable",
        "output_write_failure",
        "invalid_configuration",
        "query_input_unavailable",
    }
)

# Status codes written to the `sp` attribute of the path report.
STATUS_OK = 0
STATUS_UNREACHABLE = 1
STATUS_NOT_FOUND = 2
STATUS_MALFORMED = 3


@dataclass
class NetPathError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    fatal = False
    status = STATUS_UNREACHABLE

    def __str__(self) -> str:
        return self.message


@dataclass
class LocatorNotFound(NetPathError):
    reason_code: str = "locator_not_found"
    message: str = "no network element within the maximum distance"
    details: dict[str, Any] | None = None

    status = STATUS_NOT_FOUND


@dataclass
class Unreachable(NetPathError):
    reason_code: str = "unreachable"
    message: str = "no path between the resolved endpoints"
    details: dict[str, Any] | None = None

    status = STATUS_UNREACHABLE


@dataclass
class MalformedRecord(NetPathError):
    reason_code: str = "malformed_record"
    message: str = "record could not be parsed"
    details: dict[str, Any] | None = None

    status = STATUS_MALFORMED


@dataclass
class GraphBuildFailure(NetPathError):
    reason_code: str = "graph_build_failure"
    message: str = "network graph could not be built"
    details: dict[str, Any] | None = None

    fatal = True


@dataclass
class OutputWriteFailure(NetPathError):
    reason_code: str = "output_write_failure"
    message: str = "output could not be written"
    details: dict[str, Any] | None = None

    fatal = True
