from provisioning.composer import SecurityRuleComposer
from provisioning.config import EngineSettings
from provisioning.engine import (
    AbandonedCreate,
    CancellationToken,
    ProvisioningEngine,
    RunResult,
    StackFailure,
    StackState,
)
from provisioning.errors import (
    Cancelled,
    ConfigurationError,
    CyclicDependency,
    DeclarationError,
    DependencyFailed,
    EmptySelector,
    OutputAlreadyRecorded,
    ProviderError,
    ProvisioningError,
    ProvisioningFailed,
    ProvisioningTimeout,
    UnresolvedReference,
)
from provisioning.graph import DependencyGraphBuilder, ProvisioningPlan
from provisioning.model import (
    Declarations,
    ExportReference,
    Reference,
    ResourceKind,
    ResourceNode,
    SecurityIntent,
    Selector,
    Stack,
)
from provisioning.outputs import OutputTable, ProvisionedOutput

__all__ = [
    "AbandonedCreate",
    "CancellationToken",
    "Cancelled",
    "ConfigurationError",
    "CyclicDependency",
    "DeclarationError",
    "Declarations",
    "DependencyFailed",
    "DependencyGraphBuilder",
    "EmptySelector",
    "EngineSettings",
    "ExportReference",
    "OutputAlreadyRecorded",
    "OutputTable",
    "ProvisionedOutput",
    "ProviderError",
    "ProvisioningEngine",
    "ProvisioningError",
    "ProvisioningFailed",
    "ProvisioningPlan",
    "ProvisioningTimeout",
    "Reference",
    "ResourceKind",
    "ResourceNode",
    "RunResult",
    "SecurityIntent",
    "SecurityRuleComposer",
    "Selector",
    "Stack",
    "StackFailure",
    "StackState",
    "UnresolvedReference",
]
