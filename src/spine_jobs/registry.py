"""Handler Registry — ``kind`` → payload schema + processing function.

Manifesto:
Payloads travel through the queue as opaque JSON, but a handler should
never have to poke at an untyped dict.  Registering a kind with a pydantic
model turns the queue's payloads into a tagged union keyed by ``kind``:
Enqueue rejects malformed payloads before anything is written, and the
worker hands each handler a parsed model.

ARCHITECTURE
────────────
::

    HandlerRegistry
      ├── .register(kind, fn, payload_schema=Model)  ─ store handler
      ├── .handler(kind, payload_schema=Model)       ─ decorator form
      ├── .get(kind)                                 ─ lookup (raises HandlerNotFoundError)
      ├── .validate_payload(kind, payload)           ─ schema check, JSON-ready dict
      ├── .parse_payload(kind, payload)              ─ model (or dict) for the handler
      └── .list_kinds()                              ─ registered kinds

    get_default_registry()     ─ module-level singleton
    reset_default_registry()   ─ clear for testing

Handlers are called as ``fn(payload, ctx)`` where ``ctx`` is a
:class:`~spine_jobs.context.JobContext`.  The return value is stored as the
job's ``last_result`` and must be JSON-serializable.

Tags:
    spine-jobs, registry, handler-registry, tagged-union
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pydantic

from .errors import HandlerNotFoundError, ValidationError

Handler = Callable[..., Any]


@dataclass(frozen=True)
class HandlerSpec:
    """A registered kind."""

    kind: str
    fn: Handler
    payload_schema: type[pydantic.BaseModel] | None = None
    description: str | None = None
    tags: dict[str, str] = field(default_factory=dict)


class HandlerRegistry:
    """Injectable handler registry.

    Example:
        >>> registry = HandlerRegistry()
        >>>
        >>> class EmailSync(pydantic.BaseModel):
        ...     mailbox: str
        >>>
        >>> @registry.handler("email_sync", payload_schema=EmailSync)
        ... def email_sync(payload: EmailSync, ctx):
        ...     return {"synced": payload.mailbox}
    """

    def __init__(self) -> None:
        self._specs: dict[str, HandlerSpec] = {}
        self._lock = threading.Lock()

    def register(
        self,
        kind: str,
        fn: Handler,
        *,
        payload_schema: type[pydantic.BaseModel] | None = None,
        description: str | None = None,
        tags: dict[str, str] | None = None,
    ) -> None:
        """Register (or replace) the handler for *kind*."""
        if not kind or not kind.strip():
            raise ValidationError("kind must be a non-empty string", field="kind")
        with self._lock:
            self._specs[kind] = HandlerSpec(
                kind=kind,
                fn=fn,
                payload_schema=payload_schema,
                description=description,
                tags=tags or {},
            )

    def handler(
        self,
        kind: str,
        *,
        payload_schema: type[pydantic.BaseModel] | None = None,
        description: str | None = None,
    ) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: Handler) -> Handler:
            self.register(kind, fn, payload_schema=payload_schema, description=description)
            return fn

        return decorator

    def get(self, kind: str) -> Handler:
        """Return the handler function for *kind*.

        Raises:
            HandlerNotFoundError: If no handler is registered
        """
        return self.get_spec(kind).fn

    def get_spec(self, kind: str) -> HandlerSpec:
        spec = self._specs.get(kind)
        if spec is None:
            raise HandlerNotFoundError(kind, available=self.list_kinds())
        return spec

    def has(self, kind: str) -> bool:
        return kind in self._specs

    def list_kinds(self) -> list[str]:
        return sorted(self._specs)

    def validate_payload(self, kind: str, payload: dict[str, Any] | pydantic.BaseModel | None) -> dict[str, Any]:
        """Validate *payload* against the kind's schema and return a JSON-ready dict.

        Kinds without a registered schema (or not registered in this process
        at all) pass through unchanged.

        Raises:
            ValidationError: If the payload does not match the schema
        """
        spec = self._specs.get(kind)
        if isinstance(payload, pydantic.BaseModel):
            if spec is not None and spec.payload_schema is not None and not isinstance(payload, spec.payload_schema):
                payload = payload.model_dump(mode="json")
            else:
                return payload.model_dump(mode="json")
        payload = dict(payload or {})
        if spec is None or spec.payload_schema is None:
            return payload
        try:
            model = spec.payload_schema.model_validate(payload)
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"Invalid payload for kind {kind!r}",
                field="payload",
                errors=[
                    {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                    for e in exc.errors()
                ],
                cause=exc,
            ) from exc
        return model.model_dump(mode="json")

    def parse_payload(self, kind: str, payload: dict[str, Any]) -> Any:
        """Payload as the handler receives it: a model instance, or the raw dict."""
        spec = self.get_spec(kind)
        if spec.payload_schema is None:
            return payload
        return spec.payload_schema.model_validate(payload)

    def clear(self) -> None:
        with self._lock:
            self._specs.clear()

    def __contains__(self, kind: object) -> bool:
        return kind in self._specs

    def __len__(self) -> int:
        return len(self._specs)


# Global default registry
_default_registry: HandlerRegistry | None = None
_default_lock = threading.Lock()


def get_default_registry() -> HandlerRegistry:
    """Get the global default registry, creating it on first use."""
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = HandlerRegistry()
        return _default_registry


def reset_default_registry() -> None:
    """Reset the global registry (for testing)."""
    global _default_registry
    with _default_lock:
        _default_registry = None


def register_handler(
    kind: str,
    *,
    payload_schema: type[pydantic.BaseModel] | None = None,
    description: str | None = None,
    registry: HandlerRegistry | None = None,
) -> Callable[[Handler], Handler]:
    """Decorator registering a handler on *registry* (default: global registry)."""
    target = registry if registry is not None else get_default_registry()
    return target.handler(
        kind, payload_schema=payload_schema, description=description
    )


__all__ = [
    "Handler",
    "HandlerSpec",
    "HandlerRegistry",
    "get_default_registry",
    "reset_default_registry",
    "register_handler",
]
