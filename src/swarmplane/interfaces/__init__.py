"""External collaborator interfaces and in-memory implementations."""

from swarmplane.interfaces.consensus import ConsensusProvider, NoopConsensus
from swarmplane.interfaces.credentials import InMemorySecretStore, SecretStore
from swarmplane.interfaces.runtime import (
    AgentRuntime,
    Assignment,
    InMemoryAgentRuntime,
    SubtaskReport,
)

__all__ = [
    "AgentRuntime",
    "Assignment",
    "ConsensusProvider",
    "InMemoryAgentRuntime",
    "InMemorySecretStore",
    "NoopConsensus",
    "SecretStore",
    "SubtaskReport",
]
