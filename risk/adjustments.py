"""
adjustments.py - Ordered pipelines of named multiplicative adjustments

Position sizing and stop-loss computation both start from a base value and
apply a chain of independent factors (regime, volatility, performance,
holding time, ...). Each factor is a named stage so it can be tested on its
own, and every run produces a trace of intermediate values that is logged
at DEBUG level.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdjustmentStage:
    name: str
    factor: Callable[[Any], float]


@dataclass
class AdjustmentTrace:
    """Values produced by one pipeline run."""
    pipeline: str
    initial: float
    steps: List[Tuple[str, float, float]] = field(default_factory=list)  # (stage, factor, value after)

    @property
    def final(self) -> float:
        return self.steps[-1][2] if self.steps else self.initial

    def factors(self) -> Dict[str, float]:
        return {name: factor for name, factor, _ in self.steps}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "initial": self.initial,
            "steps": [{"stage": n, "factor": f, "value": v} for n, f, v in self.steps],
            "final": self.final,
        }


class AdjustmentPipeline:
    """
    Multiplies a base value by each stage's factor, in order.

    Stage factors must be finite and non-negative.
    """

    def __init__(self, name: str, stages: Sequence[AdjustmentStage] = ()):
        self.name = name
        self._stages: List[AdjustmentStage] = list(stages)

    def add(self, name: str, factor: Callable[[Any], float]) -> "AdjustmentPipeline":
        if any(s.name == name for s in self._stages):
            raise ValueError(f"duplicate stage '{name}' in pipeline '{self.name}'")
        self._stages.append(AdjustmentStage(name, factor))
        return self

    @property
    def stage_names(self) -> List[str]:
        return [s.name for s in self._stages]

    def run(self, initial: float, context: Any) -> AdjustmentTrace:
        trace = AdjustmentTrace(pipeline=self.name, initial=float(initial))
        value = float(initial)
        for stage in self._stages:
            factor = float(stage.factor(context))
            if not math.isfinite(factor) or factor < 0:
                raise ValueError(f"stage '{stage.name}' of '{self.name}' produced invalid factor {factor}")
            value *= factor
            trace.steps.append((stage.name, factor, value))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[%s] %.6f -> %s",
                self.name,
                trace.initial,
                " -> ".join(f"{n}x{f:.3f}={v:.6f}" for n, f, v in trace.steps),
            )
        return trace
