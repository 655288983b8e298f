#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Runs an operation as an explicit, ordered list of named steps.

Each step declares whether a failure aborts the whole operation or is
recorded as a warning while the remaining steps continue. Steps share a
mutable `context` dict so later steps can read what earlier ones produced.
"""

import log_setup
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class OnError(str, Enum):
    ABORT = "abort"
    CONTINUE = "continue"


@dataclass
class Step:
    name: str
    action: Callable[[Dict[str, Any]], Any]
    on_error: OnError = OnError.ABORT


@dataclass
class StepOutcome:
    name: str
    ok: bool
    error: Optional[str] = None


@dataclass
class PipelineResult:
    name: str
    outcomes: List[StepOutcome] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def warnings(self) -> List[str]:
        return [f"{o.name}: {o.error}" for o in self.outcomes if not o.ok]

    @property
    def completed_steps(self) -> List[str]:
        return [o.name for o in self.outcomes if o.ok]


class Pipeline:
    """An ordered sequence of steps with per-step error classification."""

    def __init__(self, name: str, steps: List[Step]):
        self.name = name
        self.steps = steps

    def run(self, context: Optional[Dict[str, Any]] = None) -> PipelineResult:
        result = PipelineResult(self.name, context=context if context is not None else {})
        total = len(self.steps)
        logging.info(f"====== {self.name} starting ({total} steps) ======")

        for i, step in enumerate(self.steps, 1):
            logging.info(f"--> Step {i}/{total}: {step.name}")
            try:
                step.action(result.context)
            except Exception as e:
                result.outcomes.append(StepOutcome(step.name, False, str(e)))
                if step.on_error is OnError.CONTINUE:
                    logging.warning(f"Step '{step.name}' failed, continuing: {e}")
                    continue
                logging.critical(f"--- {self.name} aborted at step '{step.name}': {e} ---")
                raise
            result.outcomes.append(StepOutcome(step.name, True))

        if result.warnings:
            logging.warning(
                f"====== {self.name} finished with {len(result.warnings)} warning(s) ======"
            )
        else:
            logging.info(f"====== {self.name} finished successfully ======")
        return result
