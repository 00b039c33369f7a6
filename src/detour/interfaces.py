"""Collaborator interfaces the resolver consumes or is exposed to.

Brief:
  The resolution core never touches a page, a network socket or a disk
  directly. A scanner hands it :class:`Resource` handles, a :class:`Mutator`
  applies rewritten references and reports whether they rendered, a
  :class:`Loader` performs the actual probe load, and a
  :class:`PersistenceStore` holds the JSON documents.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable


@dataclass(eq=False)
class Resource:
    """A broken (or suspect) resource as reported by the scanner.

    Inputs:
      - resource_id: Stable identity; tracking is keyed by it.
      - reference: Current reference string.
      - srcset: Optional srcset-like companion attribute rewritten alongside.

    Outputs:
      - Resource handle. Identity comparison only.
    """

    resource_id: str
    reference: str
    srcset: Optional[str] = None


@dataclass(frozen=True)
class LoadResult:
    """Outcome of a successful network load.

    Inputs:
      - size: Content size indicator (bytes, or pixel extent for images).
        Loads at or below the configured minimum are treated as placeholders.
      - status: Optional transport status code for logging.
    """

    size: int
    status: Optional[int] = None


@runtime_checkable
class Loader(Protocol):
    async def load(self, url: str, timeout: float) -> LoadResult:
        """Load url within timeout seconds; raise on any failure."""
        ...


@runtime_checkable
class Mutator(Protocol):
    def apply(self, resource: Resource, reference: str, srcset: Optional[str]) -> None:
        """Point resource at reference (and srcset, when given)."""
        ...

    async def observe(self, resource: Resource, timeout: float) -> bool:
        """Wait for the resource to render; True on success, False on error."""
        ...


@runtime_checkable
class PersistenceStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...
