"""Error taxonomy shared by the ledger, production and audit services."""

from decimal import Decimal


class StockLedgerError(Exception):
    """Base class for every error raised by the stock ledger core."""


class ValidationError(StockLedgerError):
    """Malformed input, e.g. a non-positive quantity or an unknown movement type."""


class BomCycleError(ValidationError):
    """A BOM edge would close a cycle, or expansion exceeded the depth bound."""


class NotFoundError(StockLedgerError):
    """Item, plan, order, production log or user does not exist."""


class PermissionDeniedError(StockLedgerError):
    """Role, ownership or time-window violation."""


class LogAlreadyVoidedError(PermissionDeniedError):
    """A production log can be rolled back only once."""


class ConflictError(StockLedgerError):
    """The target is in a state that forbids the operation."""


class PlanStateConflictError(ConflictError):
    pass


class ConcurrencyConflictError(ConflictError):
    """An optimistic version check failed. The caller must retry."""


class InsufficientStockError(StockLedgerError):
    def __init__(self, violations: list[dict]):
        self.violations = violations
        parts = [
            f"{violation['material_code']} (required {violation['required']}, "
            f"available {violation['available']}, short {violation['shortage']})"
            for violation in violations
        ]
        super().__init__(f"Insufficient stock for {len(violations)} material(s): {'; '.join(parts)}.")

    @property
    def total_shortage(self) -> Decimal:
        return sum((Decimal(violation["shortage"]) for violation in self.violations), Decimal("0"))


class ConsistencyDriftError(StockLedgerError):
    """Stored quantity disagrees with the replayed ledger. Informational."""

    def __init__(self, report):
        self.report = report
        super().__init__(
            f"Item {report.item_id} drifted: stored {report.stored_quantity}, "
            f"replayed {report.replayed_quantity} (drift {report.drift})."
        )
