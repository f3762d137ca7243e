"""Shared pytest fixtures: in-memory database, scheduler off, temp event log."""

import datetime
import os
from decimal import Decimal

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["SUBSCRIPTION_RENEWAL_ENABLED"] = "false"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["CONFIG_PATH"] = os.path.join(os.path.dirname(__file__), "missing-config.yaml")

from app import create_app  # noqa: E402
from extensions import db  # noqa: E402
from models import (  # noqa: E402
    Discount,
    Product,
    RecurringPlan,
    Subscription,
    SubscriptionLine,
    Tax,
    User,
)


@pytest.fixture
def app(tmp_path, monkeypatch):
    """Create application for testing."""
    monkeypatch.setenv("SUBSCRIPTION_RENEWAL_LOG", str(tmp_path / "invoices.json"))
    application = create_app()
    application.config["TESTING"] = True
    yield application
    application.extensions["renewal_scheduler"].stop()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def sample_data(app):
    """Create sample data for tests. Returns dict of IDs to avoid detached instance errors."""
    with app.app_context():
        standard = Tax.query.filter_by(name="Standard VAT").first()
        reduced = Tax.query.filter_by(name="Reduced VAT").first()

        user = User(email="customer@test.example", name="Test Customer")
        db.session.add(user)

        monthly = RecurringPlan(name="Monthly", billing_period="MONTHLY")
        weekly = RecurringPlan(name="Weekly", billing_period="WEEKLY")
        db.session.add_all([monthly, weekly])

        product = Product(name="Hosting", sales_price=Decimal("100.00"), tax_id=standard.id)
        product2 = Product(name="Support", sales_price=Decimal("50.00"), tax_id=reduced.id)
        db.session.add_all([product, product2])
        db.session.flush()

        subscription = Subscription(
            subscription_no="SO001",
            user_id=user.id,
            recurring_plan_id=monthly.id,
            status="ACTIVE",
            subtotal=Decimal("250.00"),
            tax_amount=Decimal("42.50"),
            total_amount=Decimal("292.50"),
            created_at=datetime.datetime(2025, 1, 15, 9, 0),
        )
        subscription.lines = [
            SubscriptionLine(
                product_id=product.id,
                tax_id=standard.id,
                quantity=2,
                unit_price=Decimal("100.00"),
                tax_rate=Decimal("20.00"),
                amount=Decimal("240.00"),
            ),
            SubscriptionLine(
                product_id=product2.id,
                tax_id=reduced.id,
                quantity=1,
                unit_price=Decimal("50.00"),
                tax_rate=Decimal("5.00"),
                amount=Decimal("52.50"),
            ),
        ]
        db.session.add(subscription)

        weekly_subscription = Subscription(
            subscription_no="SO002",
            user_id=user.id,
            recurring_plan_id=weekly.id,
            status="ACTIVE",
            created_at=datetime.datetime(2025, 1, 6, 9, 0),  # a Monday
        )
        weekly_subscription.lines = [
            SubscriptionLine(
                product_id=product2.id,
                tax_id=reduced.id,
                quantity=1,
                unit_price=Decimal("50.00"),
                tax_rate=Decimal("5.00"),
                amount=Decimal("52.50"),
            ),
        ]
        db.session.add(weekly_subscription)

        discount = Discount(
            code="SAVE10",
            type="PERCENTAGE",
            value=Decimal("10"),
            start_date=datetime.date(2020, 1, 1),
            minimum_purchase=Decimal("100.00"),
            minimum_quantity=1,
        )
        db.session.add(discount)
        db.session.commit()

        # Return IDs only (not ORM objects) to avoid DetachedInstanceError
        return {
            "user_id": user.id,
            "standard_tax_id": standard.id,
            "reduced_tax_id": reduced.id,
            "product_id": product.id,
            "product2_id": product2.id,
            "monthly_plan_id": monthly.id,
            "weekly_plan_id": weekly.id,
            "subscription_id": subscription.id,
            "weekly_subscription_id": weekly_subscription.id,
            "discount_id": discount.id,
        }
