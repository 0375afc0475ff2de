"""Registry mapping stage names to Stage Executor implementations."""

from __future__ import annotations

from dataclasses import dataclass, field

from docpipe.core.errors import PipelineDefinitionError
from docpipe.pipeline.definition import PipelineDefinition
from docpipe.pipeline.stages.base import BaseStage


@dataclass
class StageRegistry:
    _stages: dict[str, BaseStage] = field(default_factory=dict)

    def register(self, stage: BaseStage, name: str | None = None) -> None:
        self._stages[name or stage.name] = stage

    def unregister(self, name: str) -> None:
        self._stages.pop(name, None)

    def get(self, name: str) -> BaseStage:
        try:
            return self._stages[name]
        except KeyError as exc:
            raise PipelineDefinitionError(f"No executor registered for stage '{name}'") from exc

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def validate(self, pipeline: PipelineDefinition) -> None:
        """Every stage in the pipeline must have an executor."""
        missing = [name for name in pipeline.stage_names if name not in self._stages]
        if missing:
            raise PipelineDefinitionError(f"No executor registered for stages: {', '.join(missing)}")
