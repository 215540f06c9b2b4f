"""Typed remediation parameters, keyed by action type.

Parameters arrive from the API as camelCase JSON (``{"newModel": "gpt-4"}``)
and are stored the same way, so every model serialises by alias.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ActionType = Literal[
    "switch_model",
    "increase_safety_threshold",
    "disable_endpoint",
    "reset_settings",
    "change_system_prompt",
    "rate_limit_user",
]


class _Params(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SwitchModelParams(_Params):
    new_model: str = Field(min_length=1)


class IncreaseSafetyThresholdParams(_Params):
    new_threshold: float = Field(ge=0, le=100)


class DisableEndpointParams(_Params):
    endpoint: str = Field(min_length=1)


class ResetSettingsParams(_Params):
    pass


class ChangeSystemPromptParams(_Params):
    new_prompt: str = Field(min_length=1)


class RateLimitUserParams(_Params):
    requests_per_minute: float = Field(gt=0)


ACTION_PARAMETER_MODELS: dict[str, type[_Params]] = {
    "switch_model": SwitchModelParams,
    "increase_safety_threshold": IncreaseSafetyThresholdParams,
    "disable_endpoint": DisableEndpointParams,
    "reset_settings": ResetSettingsParams,
    "change_system_prompt": ChangeSystemPromptParams,
    "rate_limit_user": RateLimitUserParams,
}

ACTION_TYPES: tuple[str, ...] = tuple(ACTION_PARAMETER_MODELS)


class RequestData(BaseModel):
    """Attributes of an incoming model call that constraints are checked against.

    ``rate_limit_ceiling`` and ``system_prompt_override`` are directives
    written by the constraint check, not inputs.
    """

    model: str | None = None
    user_id: str | None = None
    endpoint: str | None = None
    risk_score: float | None = None
    rate_limit_ceiling: int | None = None
    system_prompt_override: str | None = None

    def directives(self) -> dict[str, Any]:
        return {
            "rate_limit_ceiling": self.rate_limit_ceiling,
            "system_prompt_override": self.system_prompt_override,
        }


class ConstraintViolation(BaseModel):
    violated: bool
    action_type: str | None = None
    reason: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def none(cls) -> "ConstraintViolation":
        return cls(violated=False)
