"""Binding rendering surfaces to registry streams."""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

from .media import MediaStreamHandle
from .registry import StreamRegistry, default_registry

logger = logging.getLogger(__name__)

MAX_RECONCILE_PASSES = 8


class Surface(Protocol):
    def set_source(self, handle: MediaStreamHandle | None) -> None:
        ...


class AttachmentSurfaceBinder:
    """Keeps one surface showing the current stream of one session key.

    ``bound_generation`` is compared by value with the registry's
    generation; an attachment happens only when they differ, so repeated
    binds, re-renders and remounts cost nothing. Unbinding detaches the
    surface and leaves the stream alone.
    """

    def __init__(
        self,
        registry: StreamRegistry | None = None,
        *,
        binder_id: str | None = None,
    ) -> None:
        self.id = binder_id or f"binder-{uuid.uuid4().hex[:12]}"
        self._registry = registry or default_registry()
        self._surface: Surface | None = None
        self._session_key: str | None = None
        self.bound_generation: int | None = None
        self._reconciling = False

    @property
    def surface(self) -> Surface | None:
        return self._surface

    @property
    def session_key(self) -> str | None:
        return self._session_key

    @property
    def bound(self) -> bool:
        return self._surface is not None

    def bind(self, surface: Surface, session_key: str) -> None:
        if self._surface is surface and self._session_key == session_key:
            self._reconcile()
            return
        if self._surface is not None:
            self.unbind()

        self._surface = surface
        self._session_key = session_key
        self.bound_generation = None
        self._registry.subscribe(session_key, self.id, self._on_registry_change)
        self._reconcile()

    def unbind(self) -> None:
        surface, key = self._surface, self._session_key
        if surface is None or key is None:
            return
        self._registry.unsubscribe(key, self.id)
        self._surface = None
        self._session_key = None
        self.bound_generation = None
        surface.set_source(None)
        logger.debug("Binder %s detached from '%s'", self.id, key)

    def _on_registry_change(self, _handle: MediaStreamHandle | None, _generation: int) -> None:
        # Always re-read current(): a nested install may already have superseded
        # the values this notification carries.
        self._reconcile()

    def _reconcile(self) -> None:
        if self._reconciling:
            return
        self._reconciling = True
        try:
            for _ in range(MAX_RECONCILE_PASSES):
                surface, key = self._surface, self._session_key
                if surface is None or key is None:
                    return
                handle, generation = self._registry.current(key)
                if generation == self.bound_generation:
                    return
                if self.bound_generation is not None and generation < self.bound_generation:
                    logger.warning(
                        "Binder %s saw generation %d after %d for '%s'",
                        self.id,
                        generation,
                        self.bound_generation,
                        key,
                    )
                    return
                surface.set_source(handle)
                self.bound_generation = generation
                logger.debug("Binder %s attached generation %d of '%s'", self.id, generation, key)
            logger.warning(
                "Binder %s did not settle on '%s' after %d passes",
                self.id,
                self._session_key,
                MAX_RECONCILE_PASSES,
            )
        finally:
            self._reconciling = False
