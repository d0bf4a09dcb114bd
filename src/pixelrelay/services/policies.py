"""Per-kind task policies: provider routing, credit cost, timeouts and estimates."""

from dataclasses import dataclass
from typing import Any

from pixelrelay.models.task import TaskKind

UPSCALE_CREDITS = {"2x": 1, "4x": 2, "8x": 4, "16x": 8}
UPSCALE_ESTIMATES = {"2x": 45, "4x": 90, "8x": 210, "16x": 450}

# Retryable error codes surfaced to clients as canRetry
RETRYABLE_ERROR_CODES = frozenset({"timeout", "max_attempts", "relay_failed", "provider_unavailable"})


@dataclass(frozen=True)
class KindPolicy:
    """Static policy of one task kind.

    Attributes:
        soft_timeout_seconds: Age after which client polls actively query the provider
        absolute_ceiling_seconds: Age after which the task is force-failed
        credits: Flat credit cost (upscale is priced by scale factor instead)
        estimated_seconds: Typical completion time reported on submission
    """

    kind: TaskKind
    soft_timeout_seconds: int
    absolute_ceiling_seconds: int
    credits: int
    estimated_seconds: int


POLICIES: dict[TaskKind, KindPolicy] = {
    TaskKind.UPSCALE: KindPolicy(TaskKind.UPSCALE, 120, 30 * 60, 0, 45),
    TaskKind.BACKGROUND_REMOVAL: KindPolicy(TaskKind.BACKGROUND_REMOVAL, 60, 10 * 60, 2, 15),
    TaskKind.TEXT_TO_IMAGE: KindPolicy(TaskKind.TEXT_TO_IMAGE, 120, 20 * 60, 1, 60),
    TaskKind.IMAGE_EDIT: KindPolicy(TaskKind.IMAGE_EDIT, 120, 20 * 60, 2, 90),
}


def policy_for(kind: TaskKind | str) -> KindPolicy:
    return POLICIES[TaskKind(kind)]


def absolute_ceilings() -> dict[TaskKind, int]:
    """Absolute age ceiling in seconds for every kind."""
    return {kind: policy.absolute_ceiling_seconds for kind, policy in POLICIES.items()}


def credits_for(kind: TaskKind | str, parameters: dict[str, Any]) -> int:
    """Credit cost fixed at submission time."""
    kind = TaskKind(kind)
    if kind == TaskKind.UPSCALE:
        return UPSCALE_CREDITS[parameters["scale_factor"]]
    return POLICIES[kind].credits


def estimated_seconds(kind: TaskKind | str, parameters: dict[str, Any]) -> int:
    kind = TaskKind(kind)
    if kind == TaskKind.UPSCALE:
        return UPSCALE_ESTIMATES.get(parameters.get("scale_factor", "2x"), 45)
    return POLICIES[kind].estimated_seconds


def provider_for(kind: TaskKind | str, engine: str) -> str:
    """Name of the provider adapter serving a kind/engine pair."""
    kind = TaskKind(kind)
    if kind == TaskKind.IMAGE_EDIT:
        return "fal"
    if kind == TaskKind.TEXT_TO_IMAGE and engine == "flux-schnell":
        return "replicate"
    return "freepik"
