from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from booking_ledger import commission
from booking_ledger.db import session
from booking_ledger.domain import CommissionQuote
from booking_ledger.errors import NotFound, ValidationFailed
from booking_ledger.models import AgentCommission


def test_quote_prefers_agent_rule_then_default(engine, ctx):
    with session(engine) as s:
        commission.upsert_rule(s, service_type="HOTEL", agent_id=None, percent=Decimal("4"), amount=None, ctx=ctx)
        commission.upsert_rule(s, service_type="HOTEL", agent_id="agent-1", percent=None, amount=Decimal("900"), ctx=ctx)
        s.commit()

        assert commission.quote_commission(s, "HOTEL", "agent-1") == CommissionQuote(percent=None, fixed_amount=Decimal("900.00"))
        assert commission.quote_commission(s, "HOTEL", "agent-2") == CommissionQuote(percent=Decimal("4.00"), fixed_amount=None)
        assert commission.quote_commission(s, "HOTEL", None) == CommissionQuote(percent=Decimal("4.00"), fixed_amount=None)
        assert commission.quote_commission(s, "FLIGHT", "agent-1") == CommissionQuote()


def test_default_rule_is_unique_per_service(engine, ctx):
    with session(engine) as s:
        commission.upsert_rule(s, service_type="TOURS", agent_id=None, percent=Decimal("5"), amount=None, ctx=ctx)
        s.commit()
        commission.upsert_rule(s, service_type="TOURS", agent_id=None, percent=Decimal("7"), amount=None, ctx=ctx)
        s.commit()

        rows = s.query(AgentCommission).filter(AgentCommission.service == "TOURS").all()
        assert len(rows) == 1
        assert rows[0].commission_percent == Decimal("7.00")


def test_rule_validation(engine, ctx):
    with session(engine) as s:
        with pytest.raises(ValidationFailed):
            commission.upsert_rule(s, service_type="VISA", agent_id=None, percent=None, amount=None, ctx=ctx)
        with pytest.raises(ValidationFailed):
            commission.upsert_rule(s, service_type="VISA", agent_id=None, percent=Decimal("120"), amount=None, ctx=ctx)
        with pytest.raises(ValueError):
            commission.upsert_rule(s, service_type="SPACE", agent_id=None, percent=Decimal("1"), amount=None, ctx=ctx)


def test_list_and_delete(engine, ctx):
    with session(engine) as s:
        rule = commission.upsert_rule(s, service_type="CRUISE", agent_id="agent-3", percent=Decimal("2"), amount=None, ctx=ctx)
        commission.upsert_rule(s, service_type="VISA", agent_id=None, percent=None, amount=Decimal("300"), ctx=ctx)
        s.commit()

        assert [r.service for r in commission.list_rules(s)] == ["CRUISE", "VISA"]
        assert [r.id for r in commission.list_rules(s, service_type="CRUISE")] == [rule.id]

        commission.delete_rule(s, rule.id)
        s.commit()
        assert commission.find_rule(s, "CRUISE", "agent-3") is None
        with pytest.raises(NotFound):
            commission.delete_rule(s, rule.id)


def test_database_rejects_a_second_default_rule(engine, ctx):
    with session(engine) as s:
        for pct in ("5", "6"):
            s.add(
                AgentCommission(
                    id=f"rule-{pct}",
                    service="TOURS",
                    agent_id=None,
                    commission_percent=Decimal(pct),
                    created_at=ctx.now,
                    updated_at=ctx.now,
                )
            )
        with pytest.raises(IntegrityError):
            s.commit()
        s.rollback()

        # Agent-specific rules are not affected by the default-rule index.
        commission.upsert_rule(s, service_type="TOURS", agent_id=None, percent=Decimal("5"), amount=None, ctx=ctx)
        commission.upsert_rule(s, service_type="TOURS", agent_id="agent-1", percent=Decimal("8"), amount=None, ctx=ctx)
        commission.upsert_rule(s, service_type="TOURS", agent_id="agent-2", percent=Decimal("9"), amount=None, ctx=ctx)
        s.commit()
        assert s.query(AgentCommission).filter(AgentCommission.agent_id.is_(None)).count() == 1
        assert commission.quote_commission(s, "TOURS", "agent-3") == CommissionQuote(percent=Decimal("5.00"))
