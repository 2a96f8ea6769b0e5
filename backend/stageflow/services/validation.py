"""Validation policies deciding whether a stage attempt's output is accepted."""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from stageflow.models import Stage
from stageflow.models.enums import ValidationOutcome, ValidationType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationVerdict:
    outcome: ValidationOutcome
    details: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.outcome == ValidationOutcome.PASS


@dataclass(frozen=True)
class NoValidation:
    """Accept any output of a successful model call."""

    def evaluate(self, raw_output: Optional[str]) -> ValidationVerdict:
        return ValidationVerdict(ValidationOutcome.PASS)


@dataclass(frozen=True)
class RegexValidation:
    """Accept the output when the stored pattern is found in it."""

    pattern: Optional[str]

    def evaluate(self, raw_output: Optional[str]) -> ValidationVerdict:
        if not self.pattern:
            return ValidationVerdict(
                ValidationOutcome.FAIL,
                "Configuration error: regex validation has no pattern",
            )
        try:
            compiled = re.compile(self.pattern)
        except re.error as e:
            return ValidationVerdict(
                ValidationOutcome.FAIL,
                f"Configuration error: invalid regex pattern {self.pattern!r}: {e}",
            )

        if compiled.search(raw_output or ""):
            return ValidationVerdict(ValidationOutcome.PASS, f"Output matched pattern {self.pattern!r}")
        return ValidationVerdict(ValidationOutcome.FAIL, f"Output did not match pattern {self.pattern!r}")


@dataclass(frozen=True)
class ManualValidation:
    """Hold the attempt until a reviewer records a result."""

    def evaluate(self, raw_output: Optional[str]) -> ValidationVerdict:
        return ValidationVerdict(ValidationOutcome.AWAITING_VALIDATION, "Awaiting manual validation")


@dataclass(frozen=True)
class MisconfiguredValidation:
    validation_type: str

    def evaluate(self, raw_output: Optional[str]) -> ValidationVerdict:
        return ValidationVerdict(
            ValidationOutcome.FAIL,
            f"Configuration error: unsupported validation type {self.validation_type!r}",
        )


ValidationPolicy = Union[NoValidation, RegexValidation, ManualValidation, MisconfiguredValidation]


def policy_for(stage: Stage) -> ValidationPolicy:
    """Pick the validation policy configured on a stage."""
    try:
        validation_type = ValidationType(stage.validation_type or ValidationType.NONE.value)
    except ValueError:
        logger.warning(f"Stage {stage.id} has unsupported validation type {stage.validation_type!r}")
        return MisconfiguredValidation(str(stage.validation_type))

    if validation_type == ValidationType.NONE:
        return NoValidation()
    if validation_type == ValidationType.REGEX:
        return RegexValidation(stage.validation_criteria)
    return ManualValidation()


def evaluate(stage: Stage, raw_output: Optional[str]) -> ValidationVerdict:
    """Run the stage's validation policy against an attempt's raw output."""
    return policy_for(stage).evaluate(raw_output)
