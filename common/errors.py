from __future__ import annotations

from typing import Any, Dict


class MigratorError(Exception):
    """
    Base for every error raised by the transform/reconcile core and the
    exchange layer. `kind` is stable and machine-readable; the message is for humans.
    """
    kind: str = "migrator_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class InsufficientPointsError(MigratorError, ValueError):
    kind = "insufficient_points"


class SingularSystemError(MigratorError, ValueError):
    """Normal equations could not be solved (collinear correspondences)."""
    kind = "singular_system"


class SingularMatrixError(MigratorError, ValueError):
    """Affine matrix is not invertible."""
    kind = "singular_matrix"


class InvalidOptionsError(MigratorError, ValueError):
    kind = "invalid_options"


class ExportFormatError(MigratorError, ValueError):
    kind = "export_format"

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["problems"] = list(self.problems)
        return d
