"""
Exceptions raised while resolving references and applying rules.

None of these escape a compilation pass: the exporter catches them per rule
or per entity and records a Diagnostic, then carries on.
"""

from typing import Any, Dict, Optional


class FshError(Exception):
    """Base exception for all export errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def error_type(self) -> str:
        return type(self).__name__.replace("Error", "")


class UnresolvedReferenceError(FshError):
    """
    A parent, type, value set, code system or invariant could not be found.

    Fatal to the referencing entity when it is the parent; otherwise only
    the rule that made the reference is skipped.
    """

    pass


class AmbiguousReferenceError(FshError):
    """
    Two local entities match the same reference.

    Examples:
    - A Profile and an Extension both with id ``Foo`` when either kind is acceptable
    """

    pass


class CyclicDependencyError(FshError):
    """
    Entities depend on each other in a loop (A's parent is B, B's parent is A).
    Every entity in the cycle is excluded from the output.
    """

    def __init__(self, chain, details: Optional[Dict[str, Any]] = None):
        self.chain = list(chain)
        super().__init__(
            f"Circular dependency: {' -> '.join(self.chain)}",
            details=details or {"chain": self.chain},
        )


class PathNotFoundError(FshError):
    """A rule's target path does not address any element."""

    pass


class IllegalNarrowingError(FshError):
    """
    A rule would loosen a constraint instead of tightening it.

    Examples:
    - Cardinality 0..* on an element that is already 1..1
    - A required binding rebound as extensible
    - An only-rule type that the element does not allow
    - Assigning a value that conflicts with one already assigned
    """

    pass


class DuplicateSliceError(FshError):
    """A slice name is already used under the same element. The first one stays."""

    pass


class DuplicateIdError(FshError):
    """An id or name is already taken within its resource family. The first one stays."""

    pass


class InvalidRuleError(FshError):
    """
    A rule's precondition failed for a reason other than a missing path.

    Examples:
    - Caret rule on an unrecognised metadata field
    - Contains rule on an element that is neither sliced nor an extension
    - Binding on an element whose types cannot carry a binding
    """

    pass


class ShadowedDefinitionError(FshError):
    """
    A local entity has the id or name of a base definition of the same family.
    Recorded as a warning: references by that name now reach the local entity.
    """

    pass
