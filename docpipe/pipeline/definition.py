"""
Pipeline Definition — the immutable, ordered list of stages.

Shared read-only by every execution. Each StageSpec carries its own retry
budget and timeout:

    attempt n (1-based) failed  →  wait min(backoff_base * 2**(n-1), backoff_cap)
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from docpipe.core.config import Settings
from docpipe.core.errors import PipelineDefinitionError

# Stage names, in execution order
EXTRACT_METADATA = "extract_metadata"
EXTRACT_TEXT     = "extract_text"
ANALYZE_TEXT     = "analyze_text"
STORE_RESULTS    = "store_results"

DEFAULT_STAGE_ORDER: tuple[str, ...] = (
    EXTRACT_METADATA,
    EXTRACT_TEXT,
    ANALYZE_TEXT,
    STORE_RESULTS,
)


@dataclass(frozen=True)
class StageSpec:
    name:         str
    max_attempts: int = 3
    backoff_base: float = 2.0           # seconds
    timeout:      float | None = 300.0  # seconds; None = unbounded
    backoff_cap:  float = 60.0

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        if attempt < 1:
            return 0.0
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_cap)


class PipelineDefinition:
    """Ordered, validated, immutable sequence of StageSpec."""

    def __init__(self, stages: Sequence[StageSpec]) -> None:
        self._stages: tuple[StageSpec, ...] = tuple(stages)
        self._validate()
        self._index = {spec.name: i for i, spec in enumerate(self._stages)}

    def _validate(self) -> None:
        if not self._stages:
            raise PipelineDefinitionError("Pipeline must contain at least one stage")

        seen: set[str] = set()
        for spec in self._stages:
            if not spec.name:
                raise PipelineDefinitionError("Stage name must not be empty")
            if spec.name in seen:
                raise PipelineDefinitionError(f"Duplicate stage name: {spec.name}")
            seen.add(spec.name)

            if spec.max_attempts < 1:
                raise PipelineDefinitionError(
                    f"Stage {spec.name}: max_attempts must be >= 1 (got {spec.max_attempts})"
                )
            if spec.backoff_base < 0:
                raise PipelineDefinitionError(
                    f"Stage {spec.name}: backoff_base must be >= 0 (got {spec.backoff_base})"
                )
            if spec.backoff_cap < 0:
                raise PipelineDefinitionError(
                    f"Stage {spec.name}: backoff_cap must be >= 0 (got {spec.backoff_cap})"
                )
            if spec.timeout is not None and spec.timeout <= 0:
                raise PipelineDefinitionError(
                    f"Stage {spec.name}: timeout must be positive (got {spec.timeout})"
                )

    # ------------------------------------------------------------------
    # Read-only access
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[StageSpec]:
        return iter(self._stages)

    def __getitem__(self, index: int) -> StageSpec:
        return self._stages[index]

    def __repr__(self) -> str:
        return f"PipelineDefinition({[s.name for s in self._stages]!r})"

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self._stages)

    def get(self, name: str) -> StageSpec:
        return self._stages[self.index_of(name)]

    def index_of(self, name: str) -> int:
        try:
            return self._index[name]
        except KeyError as exc:
            raise PipelineDefinitionError(f"Unknown stage: {name}") from exc

    def name_at(self, index: int) -> str | None:
        """Stage name at index, or None once the pipeline is complete."""
        if 0 <= index < len(self._stages):
            return self._stages[index].name
        return None


def default_pipeline(settings: Settings) -> PipelineDefinition:
    """The four-stage document pipeline, with per-stage overrides from settings."""
    specs: list[StageSpec] = []
    for name in DEFAULT_STAGE_ORDER:
        override = settings.stage_overrides.get(name, {})
        timeout = override.get("timeout", settings.stage_timeout_seconds)
        specs.append(StageSpec(
            name=name,
            max_attempts=int(override.get("max_attempts", settings.stage_max_attempts)),
            backoff_base=float(override.get("backoff_base", settings.stage_backoff_base)),
            timeout=None if timeout is None else float(timeout),
            backoff_cap=float(override.get("backoff_cap", settings.stage_backoff_cap)),
        ))
    return PipelineDefinition(specs)
