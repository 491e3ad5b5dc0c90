"""Shared fixtures for the unittest suites."""

from dataclasses import replace
from datetime import date
from itertools import count

from rpa_app import create_app
from rpa_app.extensions import db
from rpa_app.models.models import Visit
from rpa_app.settings import AppConfig, PortalCredentials

_record_numbers = count(1)


def make_config(**overrides) -> AppConfig:
    values = dict(
        database_url="sqlite://",
        jwt_secret_key="test-secret-key-that-is-long-enough-for-hs256",
        admin_username="admin",
        admin_password="admin12345",
        log_file=None,
        source=PortalCredentials("https://clinic.test/", "clinic-user", "clinic-pass"),
        mhc=PortalCredentials("https://mhc.test/", "mhc-user", "mhc-pass"),
        allianz=PortalCredentials("https://allianz.test/login", "az-user", "az-pass"),
        proxy_mode="off",
        proxy_server=None,
        step_delay_seconds=0,
        item_delay_seconds=0,
        claim_delay_seconds=0,
        batch_size=100,
        max_retries=3,
        final_submit=False,
        diagnosis_min_confidence=0.5,
        accepted_exceptions=[],
    )
    values.update(overrides)
    return replace(AppConfig.from_env(), **values)


def make_app(**overrides):
    return create_app(make_config(**overrides))


def add_visit(**fields) -> Visit:
    values = dict(
        visit_record_no=f"Q{next(_record_numbers):04d}",
        visit_date=date(2025, 1, 15),
        patient_name="TAN AH KOW",
        patient_number="78025",
        pay_type="MHC",
        extraction_status="pending",
    )
    values.update(fields)
    visit = Visit(**values)
    db.session.add(visit)
    db.session.commit()
    return visit
