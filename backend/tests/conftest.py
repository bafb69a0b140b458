"""
Shared fixtures for the bureau pipeline tests.

Every test gets its own temp-file SQLite database; tables come from
init_db() so the schema under test is the production schema.
"""
import os

# Must be set before app.database creates its module-level engine
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from datetime import date
from types import SimpleNamespace
from uuid import uuid4

from sqlalchemy.orm import sessionmaker

from app.database import build_engine, init_db
from app.models.db_models import UserDB
from app.models.ssot import (
    Account, Bureau, CreditScore, Inquiry, InquiryType, NegativeItem, NegativeItemType, Report,
)
from app.services.bureau.normalizer import summarize


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'bureau_monitor.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def _user(role: str, first_name: str, last_name: str, ssn_last_4: str = None) -> UserDB:
    user_id = str(uuid4())
    return UserDB(
        id=user_id,
        email=f"{first_name.lower()}.{user_id[:8]}@example.com",
        role=role,
        first_name=first_name,
        last_name=last_name,
        date_of_birth=date(1985, 4, 12),
        ssn_last_4=ssn_last_4,
        street_address="1 Elm St",
        unit="Apt 2",
        city="Austin",
        state="TX",
        zip_code="78701",
    )


@pytest.fixture
def subject(db):
    """A client whose reports get pulled."""
    user = _user("client", "Jane", "Doe", ssn_last_4="6789")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def other_subject(db):
    user = _user("client", "John", "Roe", ssn_last_4="1111")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def staff_user(db):
    user = _user("staff", "Sam", "Staff")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def admin_user(db):
    user = _user("admin", "Ada", "Admin")
    db.add(user)
    db.commit()
    return user


# =============================================================================
# CANONICAL REPORT FACTORIES
# =============================================================================

def account(creditor="Chase Bank", number="****1234", balance=1000.0, limit=None, status="open",
            account_type="credit_card") -> Account:
    return Account(
        creditor_name=creditor,
        account_number=number,
        account_type=account_type,
        balance=balance,
        credit_limit=limit,
        payment_status="current",
        status=status,
    )


def negative_item(creditor="ABC Collections", item_type=NegativeItemType.COLLECTION, number="****9876",
                  balance=850.0) -> NegativeItem:
    return NegativeItem(
        creditor=creditor,
        item_type=item_type,
        balance=balance,
        date_reported=date(2025, 3, 15),
        account_number=number,
        status="open",
    )


def inquiry(creditor="Auto Dealer Finance", on=date(2025, 7, 20), inquiry_type=InquiryType.HARD) -> Inquiry:
    return Inquiry(creditor=creditor, inquiry_date=on, inquiry_type=inquiry_type)


@pytest.fixture
def make_report():
    """Build a canonical Report whose summary is aggregated from its line items."""
    def _make(score=700, accounts=None, negative_items=None, inquiries=None,
              bureau=Bureau.EXPERIAN, report_id=None, report_date=None):
        accounts = list(accounts or [])
        negative_items = list(negative_items or [])
        inquiries = list(inquiries or [])
        return Report(
            bureau=bureau,
            report_id=report_id or f"RPT-{bureau.value.upper()}-{uuid4()}",
            report_date=report_date or date(2025, 10, 1),
            score=CreditScore(value=score, model="FICO Score 8"),
            accounts=accounts,
            negative_items=negative_items,
            inquiries=inquiries,
            summary=summarize(accounts, negative_items, inquiries),
        )
    return _make


@pytest.fixture
def factories():
    """Line-item builders for tests that assemble reports by hand."""
    return SimpleNamespace(account=account, negative_item=negative_item, inquiry=inquiry)
