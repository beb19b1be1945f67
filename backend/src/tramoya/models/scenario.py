"""Scenario and step models.

A scenario is an ordered list of typed steps. ``Step`` is a closed union
discriminated on ``type``; the executor matches it exhaustively.
"""

from __future__ import annotations

import enum
from typing import Annotated, Literal, Union

from pydantic import AliasChoices, ConfigDict, Field, field_validator

from tramoya.models.base import CamelModel


class StepType(str, enum.Enum):
    NAVIGATE = "navigate"
    INPUT = "input"
    CLICK = "click"
    ASSERT_TEXT = "assertText"
    ASSERT_VISIBLE = "assertVisible"
    WAIT = "wait"
    ASSERT_URL = "assertUrl"
    SCREENSHOT = "screenshot"


class BaseStep(CamelModel):
    """Fields shared by every step variant. Steps are immutable once submitted."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    description: str | None = None
    take_screenshot: bool = False


class NavigateStep(BaseStep):
    type: Literal["navigate"] = "navigate"
    url: str


class InputStep(BaseStep):
    type: Literal["input"] = "input"
    selector: str
    text: str


class ClickStep(BaseStep):
    type: Literal["click"] = "click"
    selector: str


class AssertTextStep(BaseStep):
    type: Literal["assertText"] = "assertText"
    selector: str
    text: str
    exact_match: bool = False


class AssertVisibleStep(BaseStep):
    type: Literal["assertVisible"] = "assertVisible"
    selector: str
    expected_visible: bool = Field(
        default=True,
        validation_alias=AliasChoices("expectedVisible", "shouldBeVisible", "expected_visible"),
        serialization_alias="expectedVisible",
    )


class WaitStep(BaseStep):
    type: Literal["wait"] = "wait"
    milliseconds: int = Field(ge=0)


class AssertUrlStep(BaseStep):
    type: Literal["assertUrl"] = "assertUrl"
    url: str
    exact_match: bool = False


class ScreenshotStep(BaseStep):
    type: Literal["screenshot"] = "screenshot"
    label: str | None = Field(
        default=None,
        validation_alias=AliasChoices("label", "name"),
        serialization_alias="label",
    )


Step = Annotated[
    Union[
        NavigateStep,
        InputStep,
        ClickStep,
        AssertTextStep,
        AssertVisibleStep,
        WaitStep,
        AssertUrlStep,
        ScreenshotStep,
    ],
    Field(discriminator="type"),
]


class Scenario(CamelModel):
    """An ordered, named sequence of steps submitted for execution."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str | None = None
    steps: list[Step] = Field(default_factory=list)

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, steps: list[Step]) -> list[Step]:
        seen: set[str] = set()
        for step in steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id: {step.id}")
            seen.add(step.id)
        return steps
