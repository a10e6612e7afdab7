"""
TrustGraph — Error kinds

Mutation errors are raised synchronously, before anything is applied.
ComputationIncomplete is a warning, never raised: the snapshot still ships
with converged=False.
"""


class TrustGraphError(Exception):
    pass


class ValidationError(TrustGraphError):
    pass


class InvalidWeight(ValidationError):
    def __init__(self, weight: float):
        self.weight = weight
        super().__init__(f"Edge weight must be a finite, non-negative number (got {weight!r})")


class DuplicateVouch(ValidationError):
    def __init__(self, rater: str, target: str):
        self.rater = rater
        self.target = target
        super().__init__(f"{rater} has already vouched for {target}")


class NotFound(TrustGraphError):
    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ComputationIncomplete(UserWarning):
    """Influence solver hit its iteration cap before converging."""
