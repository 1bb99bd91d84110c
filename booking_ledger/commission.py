from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

from sqlalchemy.orm import Session

from .domain import CommissionQuote, LedgerContext, ServiceType
from .errors import NotFound, ValidationFailed
from .models import AgentCommission
from .money import ZERO, to_money


def _rule_query(s: Session, service: ServiceType, agent_id: str | None):
    q = s.query(AgentCommission).filter(AgentCommission.service == service.value)
    if agent_id is None:
        return q.filter(AgentCommission.agent_id.is_(None))
    return q.filter(AgentCommission.agent_id == agent_id)


def find_rule(s: Session, service_type, agent_id: str | None) -> AgentCommission | None:
    return _rule_query(s, ServiceType(service_type), agent_id).first()


def quote_commission(s: Session, service_type, agent_id: str | None) -> CommissionQuote:
    """
    Agent-specific rule first, then the service's default rule (agent_id NULL).

    No rule at all quotes zero commission.
    """
    service = ServiceType(service_type)
    rule = None
    if agent_id:
        rule = _rule_query(s, service, agent_id).first()
    if rule is None:
        rule = _rule_query(s, service, None).first()
    if rule is None:
        return CommissionQuote()
    return CommissionQuote(
        percent=to_money(rule.commission_percent) if rule.commission_percent is not None else None,
        fixed_amount=to_money(rule.commission_amount) if rule.commission_amount is not None else None,
    )


def _validate_rule(percent: Decimal | None, amount: Decimal | None) -> None:
    if percent is None and amount is None:
        raise ValidationFailed("A commission rule needs a percent or a fixed amount")
    if percent is not None and not (ZERO <= to_money(percent) <= Decimal("100")):
        raise ValidationFailed("commission_percent must be between 0 and 100")
    if amount is not None and to_money(amount) < ZERO:
        raise ValidationFailed("commission_amount must be >= 0")


def upsert_rule(
    s: Session,
    *,
    service_type,
    agent_id: str | None,
    percent: Decimal | None,
    amount: Decimal | None,
    ctx: LedgerContext,
) -> AgentCommission:
    """Create or replace the single rule for (service_type, agent_id). Caller commits."""
    _validate_rule(percent, amount)
    service = ServiceType(service_type)
    rule = _rule_query(s, service, agent_id).with_for_update().first()
    if rule is None:
        rule = AgentCommission(
            id=str(uuid4()),
            service=service.value,
            agent_id=agent_id,
            created_by=ctx.actor_id,
            created_at=ctx.now,
        )
    rule.commission_percent = to_money(percent) if percent is not None else None
    rule.commission_amount = to_money(amount) if amount is not None else None
    rule.updated_by = ctx.actor_id
    rule.updated_at = ctx.now
    s.add(rule)
    return rule


def list_rules(s: Session, service_type=None, agent_id: str | None = None) -> list[AgentCommission]:
    q = s.query(AgentCommission)
    if service_type is not None:
        q = q.filter(AgentCommission.service == ServiceType(service_type).value)
    if agent_id is not None:
        q = q.filter(AgentCommission.agent_id == agent_id)
    return q.order_by(AgentCommission.service, AgentCommission.agent_id).all()


def delete_rule(s: Session, rule_id: str) -> None:
    rule = s.get(AgentCommission, rule_id)
    if rule is None:
        raise NotFound("Commission rule not found")
    s.delete(rule)
