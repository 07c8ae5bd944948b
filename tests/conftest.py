"""Test configuration and fixtures."""

import os
import sys
import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.dirname(os.path.dirname(__file__))))

from recurbill.db.enums import BillingFrequency, ScheduleStatus, VatType
from recurbill.db.models import Base, BillingEntity, Contract, ScheduledBilling
from recurbill.db.session import enable_sqlite_foreign_keys
from recurbill.settings import SettingsProvider

# One shared in-memory SQLite connection, visible to every session and thread
TEST_DATABASE_URL = "sqlite://"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
enable_sqlite_foreign_keys(test_engine)
TestSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=test_engine
)


def setup_test_db():
    """Create all tables in the test database."""
    Base.metadata.create_all(bind=test_engine)


def teardown_test_db():
    """Drop all tables from the test database."""
    Base.metadata.drop_all(bind=test_engine)


class BaseTestCase(unittest.TestCase):
    """Base test case with a fresh schema and a session per test."""

    def setUp(self):
        """Create the schema and open a session for the test."""
        setup_test_db()
        self.db = TestSessionLocal()
        self.settings = SettingsProvider(TestSessionLocal, ttl_seconds=0)

    def tearDown(self):
        """Close the session and drop the schema."""
        self.db.close()
        teardown_test_db()

    def reload(self, model, pk):
        """Fetch a row as currently committed by other sessions."""
        self.db.expire_all()
        return self.db.get(model, pk)

    def make_entity(self, code="YOWI", name="Yahshua Outsourcing Worldwide Inc.", prefix="YOWI-"):
        entity = BillingEntity(code=code, name=name, invoice_prefix=prefix, next_invoice_no=1)
        self.db.add(entity)
        self.db.commit()
        return entity

    def make_contract(self, company_name="Acme Trading Corp.", **fields):
        contract = Contract(
            company_name=company_name,
            email=fields.pop("email", "billing@acme.test"),
            tin=fields.pop("tin", "123-456-789-000"),
            address=fields.pop("address", "1 Ayala Ave, Makati"),
            **fields,
        )
        self.db.add(contract)
        self.db.commit()
        return contract

    def make_schedule(self, entity=None, contract=None, **fields):
        """Insert an ACTIVE monthly schedule billing 10,000.00 + VAT on the 1st."""
        entity = entity or self.make_entity()
        start_date = fields.pop("start_date", date(2026, 1, 1))
        values = {
            "billing_entity_id": entity.id,
            "contract_id": contract.id if contract is not None else None,
            "billing_amount": Decimal("10000.00"),
            "vat_type": VatType.VAT,
            "has_withholding": False,
            "frequency": BillingFrequency.MONTHLY,
            "billing_day_of_month": start_date.day,
            "start_date": start_date,
            "next_billing_date": start_date,
            "status": ScheduleStatus.ACTIVE,
            "auto_approve": False,
            "auto_send_enabled": False,
            "created_by_id": "creator-1",
        }
        values.update(fields)
        schedule = ScheduledBilling(**values)
        self.db.add(schedule)
        self.db.commit()
        return schedule
