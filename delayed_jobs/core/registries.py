from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def __contains__(self, name: str) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - job kinds mapped to their unit-of-work classes
class JobKind(Protocol):
    """Protocol for a registered unit-of-work class."""

    kind: str

    @classmethod
    def model_validate(cls, obj: Any) -> Any:
        """Rebuild the unit of work from its serialized arguments."""
        ...


class JobRegistry(Registry[type[JobKind]]):
    """Registry for unit-of-work classes, keyed by job kind."""

    def __init__(self):
        super().__init__("Job")


# Notifier Registry - outbound message providers
class Notifier(Protocol):
    """Protocol for notification providers (SMS, log, ...)."""

    async def send(self, to: str, body: str) -> dict[str, Any]:
        """
        Deliver a message.

        Returns:
            Provider response data (message id, status)

        Raises:
            NotificationError: with retryable set for transient provider failures
        """
        ...


class NotifierRegistry(Registry[Notifier]):
    """Registry for notifiers (log, http_sms)."""

    def __init__(self):
        super().__init__("Notifier")


# Global registry instances (singletons)
job_registry = JobRegistry()
notifier_registry = NotifierRegistry()
