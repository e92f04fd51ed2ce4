"""Cleanup thresholds and resource pressure classification."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from agent_command.config import CleanupSettings


class ResourcePressure(str, Enum):
    """Load levels, ordered ``normal < elevated < high < critical``."""

    NORMAL = "normal"
    ELEVATED = "elevated"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRESSURE_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ResourcePressure):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, ResourcePressure):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, ResourcePressure):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, ResourcePressure):
            return NotImplemented
        return self.rank >= other.rank


_PRESSURE_ORDER = (
    ResourcePressure.NORMAL,
    ResourcePressure.ELEVATED,
    ResourcePressure.HIGH,
    ResourcePressure.CRITICAL,
)

_TIMEOUT_SCALE = {
    ResourcePressure.NORMAL: 1.0,
    ResourcePressure.ELEVATED: 0.5,
    ResourcePressure.HIGH: 0.25,
    ResourcePressure.CRITICAL: 0.1,
}


@dataclass(frozen=True, slots=True)
class CleanupPolicy:
    """Static thresholds: time tier, resource tier and emergency tier."""

    completed_team_delay: float = 15.0
    failed_team_delay: float = 10.0
    idle_agent_timeout: float = 120.0
    suspended_idle_timeout: float = 300.0
    max_concurrent_agents: int = 24
    max_concurrent_processes: int = 8
    memory_warning_threshold_mb: int = 2048
    memory_critical_threshold_mb: int = 3072
    process_hang_timeout_seconds: float = 300.0
    enable_auto_pool_return: bool = True
    enable_resource_monitoring: bool = True

    @classmethod
    def from_settings(cls, settings: CleanupSettings) -> CleanupPolicy:
        return cls(
            completed_team_delay=settings.completed_team_delay_seconds,
            failed_team_delay=settings.failed_team_delay_seconds,
            idle_agent_timeout=settings.idle_agent_timeout_seconds,
            suspended_idle_timeout=settings.suspended_idle_timeout_seconds,
            max_concurrent_agents=settings.max_concurrent_agents,
            max_concurrent_processes=settings.max_concurrent_processes,
            memory_warning_threshold_mb=settings.memory_warning_threshold_mb,
            memory_critical_threshold_mb=settings.memory_critical_threshold_mb,
            process_hang_timeout_seconds=settings.process_hang_timeout_seconds,
            enable_auto_pool_return=settings.enable_auto_pool_return,
            enable_resource_monitoring=settings.enable_resource_monitoring,
        )

    @classmethod
    def aggressive(cls) -> CleanupPolicy:
        return cls(
            completed_team_delay=5.0,
            failed_team_delay=3.0,
            idle_agent_timeout=30.0,
            max_concurrent_agents=12,
        )

    def adjusted_timeout(self, base: float, pressure: ResourcePressure) -> float:
        """Shrink a cleanup timer as pressure rises; critical never goes below one second."""

        scaled = base * _TIMEOUT_SCALE[pressure]
        if pressure is ResourcePressure.CRITICAL:
            return max(scaled, 1.0)
        return scaled


def classify(
    active_agents: int,
    active_processes: int,
    memory_mb: float,
    policy: CleanupPolicy,
) -> ResourcePressure:
    """Classify load against the policy; boundary values land on the higher level."""

    agent_ratio = active_agents / policy.max_concurrent_agents
    process_ratio = active_processes / policy.max_concurrent_processes
    load = max(agent_ratio, process_ratio)

    if memory_mb >= policy.memory_critical_threshold_mb or load > 1.0:
        return ResourcePressure.CRITICAL
    if load >= 0.75 or memory_mb >= policy.memory_warning_threshold_mb:
        return ResourcePressure.HIGH
    if load >= 0.5:
        return ResourcePressure.ELEVATED
    return ResourcePressure.NORMAL
