import pytest

from tenant_billing import create_app
from tenant_billing.config import TestingConfig
from tenant_billing.extensions import db
from tenant_billing.models import AiPlan, AiTier, SubscriptionPlan, Tenant


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_tenant(app):
    def _make(name="Acme", **overrides):
        tenant = Tenant(name=name, contact_email=f"{name.lower()}@example.com", **overrides)
        db.session.add(tenant)
        db.session.commit()
        return tenant

    return _make


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture
def pro_plan(app):
    plan = SubscriptionPlan(
        name="Pro",
        stripe_product_id="prod_pro",
        stripe_price_id="price_pro",
        ai_plan=AiPlan.PAID_PRO,
        ai_tier=AiTier.MEDIUM,
        ai_daily_limit=2000,
        ai_monthly_limit=50000,
        price_amount=4900,
    )
    db.session.add(plan)
    db.session.commit()
    return plan


@pytest.fixture
def basic_plan(app):
    plan = SubscriptionPlan(
        name="Basic",
        stripe_product_id="prod_basic",
        stripe_price_id="price_basic",
        ai_plan=AiPlan.PAID_BASIC,
        ai_tier=AiTier.LOW,
        ai_daily_limit=500,
        ai_monthly_limit=10000,
        price_amount=1900,
        display_order=1,
    )
    db.session.add(plan)
    db.session.commit()
    return plan

