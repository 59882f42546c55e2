from typing import Any, Iterable, Optional


class ProvisioningError(Exception):
    """Base class for every error raised by the provisioning core."""


class ConfigurationError(ProvisioningError):
    """A declaration problem detected before any provider call is made."""


class DeclarationError(ConfigurationError):
    pass


class UnresolvedReference(ConfigurationError):
    def __init__(
        self, stack: str, node: Optional[str], reference: Any, reason: str
    ) -> None:
        self.stack = stack
        self.node = node
        self.reference = reference
        self.reason = reason
        location = f"{stack}/{node}" if node else stack
        super().__init__(f"{location}: unresolved reference {reference!r} ({reason})")


class CyclicDependency(ConfigurationError):
    def __init__(self, stacks: Iterable[str]) -> None:
        self.stacks = tuple(sorted(stacks))
        super().__init__(
            "Cyclic dependency between stacks: " + ", ".join(self.stacks)
        )


class EmptySelector(ConfigurationError):
    def __init__(self, selector: Any, role: str) -> None:
        self.selector = selector
        self.role = role
        super().__init__(f"{role} selector {selector} matched no security group")


class ProviderError(ProvisioningError):
    """Failure reported by a resource provider."""

    def __init__(
        self, code: str, message: str, status_code: Optional[int] = None
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(f"{code}: {message}")


class ProvisioningFailed(ProvisioningError):
    def __init__(
        self, stack: str, node: Optional[str], cause: BaseException
    ) -> None:
        self.stack = stack
        self.node = node
        self.cause = cause
        location = f"{stack}/{node}" if node else stack
        super().__init__(f"Provisioning {location} failed: {cause}")


class ProvisioningTimeout(ProvisioningFailed):
    def __init__(self, stack: str, node: Optional[str], timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            stack, node, TimeoutError(f"provider call exceeded {timeout}s")
        )


class Cancelled(ProvisioningError):
    def __init__(self, stack: str, node: Optional[str] = None) -> None:
        self.stack = stack
        self.node = node
        super().__init__(f"Run cancelled while provisioning {stack}")


class OutputAlreadyRecorded(ProvisioningError):
    def __init__(self, stack: str, name: str) -> None:
        self.stack = stack
        self.name = name
        super().__init__(f"Output {stack}/{name} was already recorded")


class DependencyFailed(ProvisioningError):
    def __init__(self, stack: str, failed: Iterable[str]) -> None:
        self.stack = stack
        self.failed = tuple(failed)
        super().__init__(
            f"{stack} not provisioned: dependency {', '.join(self.failed)} failed"
        )
