"""
Per-action-type parameter structs.

Each action type maps to exactly one parameter model. Parameters are
validated once, when a policy is validated for activation; evaluation only
copies them into the action plan.
"""

from typing import Any, Dict, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .models import ActionType


class ActionParameters(BaseModel):
    """Parameters common to every action type."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid"
    )

    reason: Optional[str] = Field(None, description="Reason shown to the affected party")
    message: Optional[str] = Field(None, description="Free-form message")


class BlockParameters(ActionParameters):
    """block, suspend, ban, quarantine."""
    duration: Optional[int] = Field(None, ge=1, description="Duration in seconds")
    permanent: bool = Field(False, description="Block without expiry")


class RedirectParameters(ActionParameters):
    url: str = Field(..., min_length=1, description="Redirect target")


class NotifyParameters(ActionParameters):
    email: Optional[str] = Field(None, description="Recipient email")
    webhook: Optional[str] = Field(None, description="Webhook URL")
    channel: Optional[str] = Field(None, description="Notification channel")

    @model_validator(mode="after")
    def require_target(self):
        if not self.email and not self.webhook:
            raise ValueError("Email or webhook is required for notify action")
        return self


class LogParameters(ActionParameters):
    level: Literal["debug", "info", "warning", "error"] = "info"


class EscalateParameters(ActionParameters):
    level: Optional[str] = Field(None, description="Escalation tier")
    assignee: Optional[str] = Field(None, description="Escalation owner")


class RateLimitParameters(ActionParameters):
    limit: int = Field(..., ge=1, description="Requests allowed per window")
    window_seconds: int = Field(..., ge=1, description="Window length in seconds")


class FlagParameters(ActionParameters):
    label: Optional[str] = None
    severity: Optional[Literal["low", "medium", "high", "critical"]] = None


class AutoModerateParameters(ActionParameters):
    mode: Optional[str] = Field(None, description="Moderation mode")


class AutoCorrectParameters(ActionParameters):
    correction_value: Any = None
    correction_function: Optional[str] = None

    @model_validator(mode="after")
    def require_correction(self):
        if self.correction_value is None and not self.correction_function:
            raise ValueError("Correction value or function is required for auto_correct action")
        return self


class CustomFunctionParameters(ActionParameters):
    function_name: str = Field(..., min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)


class WebhookParameters(ActionParameters):
    url: str = Field(..., min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)


class EmailParameters(ActionParameters):
    to: str = Field(..., min_length=1)
    subject: Optional[str] = None
    template: Optional[str] = None


class SmsParameters(ActionParameters):
    to: str = Field(..., min_length=1)


class PushNotificationParameters(ActionParameters):
    title: Optional[str] = None
    body: Optional[str] = None


ACTION_PARAMETER_MODELS: Dict[str, Type[ActionParameters]] = {
    ActionType.ALLOW.value: ActionParameters,
    ActionType.DENY.value: ActionParameters,
    ActionType.BLOCK.value: BlockParameters,
    ActionType.REDIRECT.value: RedirectParameters,
    ActionType.NOTIFY.value: NotifyParameters,
    ActionType.LOG.value: LogParameters,
    ActionType.ESCALATE.value: EscalateParameters,
    ActionType.QUARANTINE.value: BlockParameters,
    ActionType.RATE_LIMIT.value: RateLimitParameters,
    ActionType.CAPTCHA.value: ActionParameters,
    ActionType.MFA_REQUIRED.value: ActionParameters,
    ActionType.SUSPEND.value: BlockParameters,
    ActionType.BAN.value: BlockParameters,
    ActionType.FLAG.value: FlagParameters,
    ActionType.AUTO_MODERATE.value: AutoModerateParameters,
    ActionType.AUTO_CORRECT.value: AutoCorrectParameters,
    ActionType.CUSTOM_FUNCTION.value: CustomFunctionParameters,
    ActionType.WEBHOOK.value: WebhookParameters,
    ActionType.EMAIL.value: EmailParameters,
    ActionType.SMS.value: SmsParameters,
    ActionType.PUSH_NOTIFICATION.value: PushNotificationParameters,
}


def parameter_model_for(action_type: str) -> Optional[Type[ActionParameters]]:
    """Parameter model for an action type, or None if the type is unknown."""
    return ACTION_PARAMETER_MODELS.get(action_type)


def parse_action_parameters(action_type: str, parameters: Optional[Dict[str, Any]]) -> ActionParameters:
    """Validate raw parameters for an action type.

    Raises KeyError for unknown types and pydantic.ValidationError for bad
    parameters.
    """
    model = ACTION_PARAMETER_MODELS[action_type]
    return model.model_validate(parameters or {})
