"""Registry of domain operations invoked by workflow actions."""

from __future__ import annotations

import inspect
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import UnknownOperationError
from .models import OperationDescriptor

OperationHandler = Callable[[Dict[str, Any], str], Any]


class OperationRegistry:
    """Maps ``(domain, operation)`` to the handler owned by that domain.

    Handlers are called as ``handler(parameters, idempotency_key)`` and must
    return the same result when re-called with a key they already processed.
    """

    def __init__(self) -> None:
        self._operations: Dict[Tuple[str, str], OperationDescriptor] = {}

    def register(
        self,
        domain: str,
        name: str,
        handler: OperationHandler,
        description: Optional[str] = None,
        replace: bool = False,
    ) -> OperationDescriptor:
        key = (domain, name)
        if key in self._operations and not replace:
            raise ValueError(f"Operation {domain}.{name} is already registered")
        descriptor = OperationDescriptor(
            domain=domain,
            name=name,
            handler=handler,
            description=description or inspect.getdoc(handler),
        )
        self._operations[key] = descriptor
        return descriptor

    def operation(self, domain: str, name: Optional[str] = None):
        """Decorator registering a function as ``domain.name``."""

        def decorator(func: OperationHandler) -> OperationHandler:
            self.register(domain, name or func.__name__, func)
            return func

        return decorator

    def resolve(self, domain: str, name: str) -> OperationDescriptor:
        try:
            return self._operations[(domain, name)]
        except KeyError:
            raise UnknownOperationError(domain, name) from None

    def list(self, domain: Optional[str] = None) -> List[OperationDescriptor]:
        return [
            d
            for key, d in sorted(self._operations.items())
            if domain is None or key[0] == domain
        ]

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._operations


# Process-wide registry used when an application does not provide its own.
OPERATIONS = OperationRegistry()


__all__ = [
    "OperationDescriptor",
    "OperationHandler",
    "OperationRegistry",
    "OPERATIONS",
]
