"""
Error classes and anomaly kinds for CA Graph collection runs
"""

from dataclasses import dataclass


# Soft conditions: recorded on the session, never raised past the component that hit them
TRANSIENT_LOOKUP_FAILURE = 'transientLookupFailure'
STRUCTURAL_ANOMALY = 'structuralAnomaly'
CYCLE_OR_DEPTH_LIMIT = 'cycleOrDepthLimit'

ANOMALY_KINDS = (TRANSIENT_LOOKUP_FAILURE, STRUCTURAL_ANOMALY, CYCLE_OR_DEPTH_LIMIT)


class FatalConfigurationError(ValueError):
    """Raised when a run cannot start: no reachable directory service or no valid session."""


@dataclass(frozen=True)
class Anomaly:
    """A non-fatal condition met during collection."""
    kind: str
    subject: str
    message: str

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'subject': self.subject, 'message': self.message}
