"""
Escalation Policy.

============================================================
PURPOSE
============================================================
Typed, validated view of a stored escalation policy and the
pure step-selection rule.

Timing:
    step 1 becomes due at trigger_after_minutes
    step n becomes due wait_minutes after step n-1

A malformed policy raises PolicyLogicError when it is parsed,
before anything is sent.

============================================================
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from core.exceptions import PolicyLogicError
from database.models import EscalationPolicyRecord
from ..models import AlertSeverity, Channel


_CHANNEL_FLAGS = (
    ("notify_email", Channel.EMAIL),
    ("notify_sms", Channel.SMS),
    ("notify_websocket", Channel.WEBSOCKET),
)


@dataclass(frozen=True)
class EscalationStep:
    """One escalation step."""

    order: int
    wait_minutes: int
    escalate_to_roles: FrozenSet[str]
    channels: Tuple[Channel, ...]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], policy_id: Optional[int] = None) -> "EscalationStep":
        try:
            order = int(data["order"])
            wait_minutes = int(data.get("wait_minutes", 0))
        except (KeyError, TypeError, ValueError):
            raise PolicyLogicError(
                f"Step has no valid order/wait_minutes: {dict(data)}", policy_id=policy_id
            ) from None

        roles = data.get("escalate_to_roles") or []
        if isinstance(roles, str):
            roles = [roles]

        if "channels" in data:
            try:
                channels = tuple(Channel(str(c).lower()) for c in data["channels"])
            except ValueError:
                raise PolicyLogicError(
                    f"Step {order} names an unknown channel: {data['channels']}",
                    policy_id=policy_id,
                ) from None
        else:
            channels = tuple(ch for flag, ch in _CHANNEL_FLAGS if data.get(flag))

        return cls(
            order=order,
            wait_minutes=wait_minutes,
            escalate_to_roles=frozenset(str(r) for r in roles),
            channels=tuple(sorted(set(channels), key=list(Channel).index)),
        )


@dataclass(frozen=True)
class EscalationPolicy:
    """Validated escalation policy, steps sorted by order."""

    id: int
    name: str
    trigger_severities: FrozenSet[AlertSeverity]
    trigger_after_minutes: int
    steps: Tuple[EscalationStep, ...]

    @classmethod
    def from_record(cls, record: EscalationPolicyRecord) -> "EscalationPolicy":
        return cls.build(
            policy_id=record.id,
            name=record.name,
            trigger_severities=record.trigger_severities,
            trigger_after_minutes=record.trigger_after_minutes,
            steps=record.steps,
        )

    @classmethod
    def build(
        cls,
        policy_id: int,
        name: str,
        trigger_severities: Iterable[str],
        trigger_after_minutes: int,
        steps: Sequence[Mapping[str, Any]],
    ) -> "EscalationPolicy":
        """
        Parse and validate.

        Raises:
            PolicyLogicError: unknown severity, negative timing,
                missing roles or channels, or step orders that are
                not 1..n without gaps
        """
        try:
            severities = frozenset(AlertSeverity(str(s).lower()) for s in trigger_severities or [])
        except ValueError:
            raise PolicyLogicError(
                f"Policy {name!r} has an unknown trigger severity: {trigger_severities}",
                policy_id=policy_id,
            ) from None
        if not severities:
            raise PolicyLogicError(f"Policy {name!r} has no trigger severities", policy_id=policy_id)

        if trigger_after_minutes is None or trigger_after_minutes < 0:
            raise PolicyLogicError(
                f"Policy {name!r} has invalid trigger_after_minutes: {trigger_after_minutes}",
                policy_id=policy_id,
            )

        if not isinstance(steps, (list, tuple)) or not steps:
            raise PolicyLogicError(f"Policy {name!r} has no steps", policy_id=policy_id)

        parsed = sorted(
            (EscalationStep.from_dict(s, policy_id) for s in steps),
            key=lambda s: s.order,
        )

        orders = [s.order for s in parsed]
        if orders != list(range(1, len(parsed) + 1)):
            raise PolicyLogicError(
                f"Policy {name!r} step orders must be 1..{len(parsed)}, got {orders}",
                policy_id=policy_id,
            )
        for step in parsed:
            if step.wait_minutes < 0:
                raise PolicyLogicError(
                    f"Policy {name!r} step {step.order} has negative wait_minutes",
                    policy_id=policy_id,
                )
            if not step.escalate_to_roles:
                raise PolicyLogicError(
                    f"Policy {name!r} step {step.order} escalates to no roles",
                    policy_id=policy_id,
                )
            if not step.channels:
                raise PolicyLogicError(
                    f"Policy {name!r} step {step.order} has no channels",
                    policy_id=policy_id,
                )

        return cls(
            id=policy_id,
            name=name,
            trigger_severities=severities,
            trigger_after_minutes=int(trigger_after_minutes),
            steps=tuple(parsed),
        )

    def activation_minutes(self) -> Dict[int, int]:
        """Minutes after triggering at which each step becomes due."""
        return _activation_minutes(self.steps, self.trigger_after_minutes)

    def due_step(self, minutes_elapsed: int) -> Optional[EscalationStep]:
        return determine_step(self.steps, minutes_elapsed, self.trigger_after_minutes)


def _activation_minutes(steps: Sequence[EscalationStep], trigger_after_minutes: int) -> Dict[int, int]:
    cumulative = trigger_after_minutes
    activation: Dict[int, int] = {}
    for step in sorted(steps, key=lambda s: s.order):
        if step.order > 1:
            cumulative += step.wait_minutes
        activation[step.order] = cumulative
    return activation


def determine_step(
    steps: Sequence[EscalationStep],
    minutes_elapsed: int,
    trigger_after_minutes: int,
) -> Optional[EscalationStep]:
    """
    The single step due at `minutes_elapsed`.

    That is the last step whose activation time has passed and
    whose successor's has not, or the final step once every
    activation has passed. None before step 1 is due.
    """
    ordered: List[EscalationStep] = sorted(steps, key=lambda s: s.order)
    if not ordered:
        return None

    activation = _activation_minutes(ordered, trigger_after_minutes)
    due: Optional[EscalationStep] = None
    for step in ordered:
        if minutes_elapsed < activation[step.order]:
            break
        due = step
    return due


__all__ = [
    "EscalationStep",
    "EscalationPolicy",
    "determine_step",
]
