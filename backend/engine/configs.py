"""
Typed configuration variants for step configs and action parameters.

The persisted `config` / `additional_params` JSON blobs are validated here,
at the step runner boundary, with one model per step or action type.
"""
from typing import Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from engine.errors import ConfigValidationError
from storage.models import ActionTypeEnum, StepTypeEnum


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ============================================================================
# Step configs
# ============================================================================

class ConditionStepConfig(_StrictModel):
    """Gate on one or more workflow conditions."""
    condition_ids: List[int] = Field(..., min_length=1, description="Conditions evaluated by the step")
    mode: Literal["all", "any"] = Field(default="all", description="How applicable results combine")


class ActionStepConfig(_StrictModel):
    """Run actions; defaults to every action bound to the step."""
    action_ids: Optional[List[int]] = Field(default=None, description="Explicit action ids, in order")


class NotificationStepConfig(_StrictModel):
    """Send a message without any condition/action semantics."""
    channel: Literal["alert", "webhook", "email", "sms"] = Field(default="alert")
    recipient: Optional[str] = Field(default=None, description="Email, phone number or webhook URL")
    subject: Optional[str] = Field(default=None, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)

    @field_validator("recipient")
    @classmethod
    def strip_recipient(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value else value


class DelayStepConfig(_StrictModel):
    """Suspend the run for a fixed duration."""
    seconds: float = Field(..., ge=0)


StepConfig = Union[ConditionStepConfig, ActionStepConfig, NotificationStepConfig, DelayStepConfig]

STEP_CONFIG_MODELS: Dict[StepTypeEnum, Type[BaseModel]] = {
    StepTypeEnum.CONDITION: ConditionStepConfig,
    StepTypeEnum.ACTION: ActionStepConfig,
    StepTypeEnum.NOTIFICATION: NotificationStepConfig,
    StepTypeEnum.DELAY: DelayStepConfig,
}


# ============================================================================
# Action parameters
# ============================================================================

class OrderActionParams(_StrictModel):
    """Extra order parameters for buy/sell actions."""
    time_in_force: Optional[Literal["day", "gtc", "gtd", "ioc", "fok"]] = None


class AlertActionParams(_StrictModel):
    message: Optional[str] = Field(default=None, max_length=2000)


class WebhookActionParams(_StrictModel):
    url: str = Field(..., min_length=1)
    method: Literal["POST", "PUT"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        url = value.strip()
        if not (url.startswith("http://") or url.startswith("https://")):
            raise ValueError("webhook url must start with http:// or https://")
        return url


class EmailActionParams(_StrictModel):
    recipient: str = Field(..., min_length=3)
    subject: Optional[str] = Field(default=None, max_length=200)
    message: Optional[str] = Field(default=None, max_length=5000)


class SmsActionParams(_StrictModel):
    recipient: str = Field(..., min_length=3)
    message: Optional[str] = Field(default=None, max_length=1600)


class CustomActionParams(_StrictModel):
    handler: str = Field(..., min_length=1, description="Name of a registered custom handler")
    arguments: Dict[str, Any] = Field(default_factory=dict)


ActionParams = Union[
    OrderActionParams, AlertActionParams, WebhookActionParams,
    EmailActionParams, SmsActionParams, CustomActionParams,
]

ACTION_PARAM_MODELS: Dict[ActionTypeEnum, Type[BaseModel]] = {
    ActionTypeEnum.BUY: OrderActionParams,
    ActionTypeEnum.SELL: OrderActionParams,
    ActionTypeEnum.ALERT: AlertActionParams,
    ActionTypeEnum.WEBHOOK: WebhookActionParams,
    ActionTypeEnum.EMAIL: EmailActionParams,
    ActionTypeEnum.SMS: SmsActionParams,
    ActionTypeEnum.CUSTOM: CustomActionParams,
}


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_step_config(step_type: Any, raw: Optional[Dict[str, Any]]) -> StepConfig:
    """Validate a step's config blob against the model for its type."""
    try:
        kind = StepTypeEnum(step_type)
    except ValueError as exc:
        raise ConfigValidationError(f"Unknown step type: {step_type}") from exc
    model = STEP_CONFIG_MODELS[kind]
    try:
        return model.model_validate(raw or {})
    except PydanticValidationError as exc:
        raise ConfigValidationError(f"Invalid {kind.value} step config: {_describe(exc)}") from exc


def parse_action_params(action_type: Any, raw: Optional[Dict[str, Any]]) -> ActionParams:
    """Validate an action's additional_params blob against the model for its type."""
    try:
        kind = ActionTypeEnum(action_type)
    except ValueError as exc:
        raise ConfigValidationError(f"Unknown action type: {action_type}") from exc
    model = ACTION_PARAM_MODELS[kind]
    try:
        return model.model_validate(raw or {})
    except PydanticValidationError as exc:
        raise ConfigValidationError(f"Invalid {kind.value} action params: {_describe(exc)}") from exc
