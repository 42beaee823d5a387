"""
Service wiring.

Builds the access control components once per process for the chosen
storage backend and exposes them as FastAPI dependencies.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.access.audit_ledger import AuditLedger
from app.access.audit_repository import (
    AuditRepository,
    InMemoryAuditRepository,
    SqlAuditRepository,
)
from app.access.audit_writer import AuditWriter
from app.access.consent_evaluator import ConsentEvaluator
from app.access.consent_service import ConsentService
from app.access.consent_store import ConsentStore, InMemoryConsentStore, SqlConsentStore
from app.access.emergency import EmergencyOverride
from app.access.gateway import AccessGateway
from app.access.patients import (
    InMemoryPatientDirectory,
    PatientDirectory,
    SqlPatientDirectory,
)
from app.config import Settings, settings

logger = logging.getLogger(__name__)


@dataclass
class AccessServices:
    """Everything the routes need, sharing one store, ledger and writer."""

    store: ConsentStore
    repository: AuditRepository
    patients: PatientDirectory
    ledger: AuditLedger
    writer: AuditWriter
    evaluator: ConsentEvaluator
    gateway: AccessGateway
    emergency: EmergencyOverride
    consents: ConsentService


def build_services(
    config: Settings = settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    store: Optional[ConsentStore] = None,
    repository: Optional[AuditRepository] = None,
    patients: Optional[PatientDirectory] = None,
) -> AccessServices:
    """
    Assemble the access layer.

    Explicit components win; the rest follow config.storage_backend.
    """
    if config.storage_backend == "sql":
        if session_factory is None:
            from app.infra.database import async_session_factory
            session_factory = async_session_factory
        store = store or SqlConsentStore(session_factory)
        repository = repository or SqlAuditRepository(session_factory)
        patients = patients or SqlPatientDirectory(session_factory)
    else:
        store = store or InMemoryConsentStore()
        repository = repository or InMemoryAuditRepository()
        patients = patients or InMemoryPatientDirectory()

    ledger = AuditLedger(
        repository,
        server_name=config.server_name,
        retention_years=config.audit_retention_years,
        write_timeout=config.audit_write_timeout,
    )
    writer = AuditWriter(
        ledger,
        max_queue=config.audit_queue_size,
        max_retries=config.audit_max_retries,
        retry_backoff=config.audit_retry_backoff,
    )
    evaluator = ConsentEvaluator(store, timeout=config.consent_check_timeout)

    logger.info(f"Access services built: backend={config.storage_backend}")
    return AccessServices(
        store=store,
        repository=repository,
        patients=patients,
        ledger=ledger,
        writer=writer,
        evaluator=evaluator,
        gateway=AccessGateway(evaluator, writer),
        emergency=EmergencyOverride(
            store,
            writer,
            patients=patients,
            access_hours=config.emergency_access_hours,
        ),
        consents=ConsentService(store, evaluator, writer, patients=patients),
    )


# Singleton instance
_services: Optional[AccessServices] = None


def get_services() -> AccessServices:
    """Get singleton AccessServices."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Optional[AccessServices]) -> None:
    """Replace the singleton (startup and tests)."""
    global _services
    _services = services


# ==================================
# FastAPI dependencies
# ==================================

def get_gateway() -> AccessGateway:
    return get_services().gateway


def get_emergency_override() -> EmergencyOverride:
    return get_services().emergency


def get_consent_service() -> ConsentService:
    return get_services().consents


def get_ledger() -> AuditLedger:
    return get_services().ledger


def get_patient_directory() -> PatientDirectory:
    return get_services().patients
