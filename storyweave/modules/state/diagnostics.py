from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)

UNKNOWN_STATE_ID = "UNKNOWN_STATE_ID"
MALFORMED_REPLACE_PAYLOAD = "MALFORMED_REPLACE_PAYLOAD"
DUPLICATE_CANON_FACT = "DUPLICATE_CANON_FACT"
MALFORMED_TAGGED_ENTRY = "MALFORMED_TAGGED_ENTRY"
UNKNOWN_CATEGORY = "UNKNOWN_CATEGORY"
REMOVAL_DESCRIPTION_IGNORED = "REMOVAL_DESCRIPTION_IGNORED"
CATEGORY_MISMATCH = "CATEGORY_MISMATCH"
DUPLICATE_PREFIX = "DUPLICATE_PREFIX"
UNMATCHED_REMOVAL = "UNMATCHED_REMOVAL"


@dataclass(frozen=True, slots=True)
class StateReconciliationDiagnostic:
    code: str
    field: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "field": self.field, "message": self.message}

    @classmethod
    def from_dict(cls, payload: dict) -> StateReconciliationDiagnostic:
        return cls(
            code=str(payload.get("code") or "").strip(),
            field=str(payload.get("field") or "").strip(),
            message=str(payload.get("message") or ""),
        )


class DiagnosticsCollector:
    """Accumulates non-fatal findings for one reconcile/apply pass.

    Appliers and validators take a collector instead of writing to a shared
    warning channel, so callers (and tests) can inspect exactly what was
    dropped or skipped.
    """

    def __init__(self, items: Iterable[StateReconciliationDiagnostic] = ()) -> None:
        self._items: list[StateReconciliationDiagnostic] = list(items)

    def add(self, code: str, field: str, message: str) -> StateReconciliationDiagnostic:
        item = StateReconciliationDiagnostic(code=str(code), field=str(field), message=str(message))
        self._items.append(item)
        return item

    def warn(self, code: str, field: str, message: str) -> StateReconciliationDiagnostic:
        logger.warning("%s [%s] %s", code, field, message)
        return self.add(code, field, message)

    def extend(self, items: Iterable[StateReconciliationDiagnostic]) -> None:
        self._items.extend(items)

    @property
    def items(self) -> list[StateReconciliationDiagnostic]:
        return list(self._items)

    def codes(self) -> list[str]:
        return [item.code for item in self._items]

    def to_list(self) -> list[dict[str, str]]:
        return [item.to_dict() for item in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[StateReconciliationDiagnostic]:
        return iter(list(self._items))


def warn_into(
    diagnostics: DiagnosticsCollector | None,
    code: str,
    field: str,
    message: str,
) -> None:
    if diagnostics is None:
        logger.warning("%s [%s] %s", code, field, message)
        return
    diagnostics.warn(code, field, message)


__all__ = [
    "StateReconciliationDiagnostic",
    "DiagnosticsCollector",
    "warn_into",
    "UNKNOWN_STATE_ID",
    "MALFORMED_REPLACE_PAYLOAD",
    "DUPLICATE_CANON_FACT",
    "MALFORMED_TAGGED_ENTRY",
    "UNKNOWN_CATEGORY",
    "REMOVAL_DESCRIPTION_IGNORED",
    "CATEGORY_MISMATCH",
    "DUPLICATE_PREFIX",
    "UNMATCHED_REMOVAL",
]
