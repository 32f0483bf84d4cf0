"""
Consensus (hive-mind) interface.

When a cluster enables hive-mind mode, each agent joins the cluster's
consensus group once its peers are configured and leaves it on teardown.
No protocol is implemented here.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("swarmplane.consensus")


class ConsensusProvider(Protocol):
    async def join(self, cluster: str, agent: str, peers: list[str]) -> None: ...

    async def leave(self, cluster: str, agent: str) -> None: ...


class NoopConsensus:
    """Tracks group membership without running any protocol."""

    def __init__(self):
        self.members: dict[str, set[str]] = {}

    async def join(self, cluster: str, agent: str, peers: list[str]) -> None:
        group = self.members.setdefault(cluster, set())
        if agent not in group:
            group.add(agent)
            logger.debug(f"{agent} joined consensus group {cluster} ({len(peers)} peers)")

    async def leave(self, cluster: str, agent: str) -> None:
        self.members.get(cluster, set()).discard(agent)
