"""Dependency injection singletons for Corrispettivi-Engine."""

from corrispettivi_engine.aggregation.engine import AggregationService
from corrispettivi_engine.anomaly.service import AnomalyService
from corrispettivi_engine.audit.service import AuditJobService
from corrispettivi_engine.authority.client import AuthorityClient, HttpAuthorityClient
from corrispettivi_engine.common.config import get_settings
from corrispettivi_engine.common.database import DatabaseManager
from corrispettivi_engine.common.locks import KeyedLock
from corrispettivi_engine.ingestion.service import IngestionService
from corrispettivi_engine.outcomes.poller import OutcomePoller
from corrispettivi_engine.storage.blob import BlobStore, create_blob_store

_db: DatabaseManager | None = None
_blob_store: BlobStore | None = None
_locks: KeyedLock | None = None
_authority: AuthorityClient | None = None
_anomaly: AnomalyService | None = None
_ingestion: IngestionService | None = None
_aggregation: AggregationService | None = None
_poller: OutcomePoller | None = None
_audit: AuditJobService | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_blob_store() -> BlobStore:
    global _blob_store
    if _blob_store is None:
        settings = get_settings()
        _blob_store = create_blob_store(settings.storage_backend, settings.storage_dir)
    return _blob_store


def get_locks() -> KeyedLock:
    """Per-(vat, device, date) locks shared by ingestion and aggregation."""
    global _locks
    if _locks is None:
        _locks = KeyedLock()
    return _locks


def get_authority_client() -> AuthorityClient:
    global _authority
    if _authority is None:
        settings = get_settings()
        _authority = HttpAuthorityClient(
            settings.authority_base_url,
            token=settings.authority_token,
            timeout=settings.authority_timeout,
        )
    return _authority


def set_authority_client(client: AuthorityClient) -> None:
    """Replace the authority client (tests, alternative transports)."""
    global _authority, _aggregation, _poller
    _authority = client
    _aggregation = None
    _poller = None


def get_anomaly_service() -> AnomalyService:
    global _anomaly
    if _anomaly is None:
        _anomaly = AnomalyService(get_settings(), blob_store=get_blob_store())
    return _anomaly


def get_ingestion_service() -> IngestionService:
    global _ingestion
    if _ingestion is None:
        _ingestion = IngestionService(
            get_settings(),
            get_blob_store(),
            anomaly_service=get_anomaly_service(),
            locks=get_locks(),
        )
    return _ingestion


def get_outcome_poller() -> OutcomePoller:
    global _poller
    if _poller is None:
        _poller = OutcomePoller(
            get_settings(),
            get_authority_client(),
            db=get_db(),
            anomaly_service=get_anomaly_service(),
        )
    return _poller


def get_aggregation_service() -> AggregationService:
    global _aggregation
    if _aggregation is None:
        _aggregation = AggregationService(
            get_settings(),
            get_authority_client(),
            locks=get_locks(),
            db=get_db(),
            poller=get_outcome_poller(),
        )
    return _aggregation


def get_audit_service() -> AuditJobService:
    global _audit
    if _audit is None:
        _audit = AuditJobService(get_settings(), get_blob_store(), db=get_db())
    return _audit


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _blob_store, _locks, _authority, _anomaly, _ingestion
    global _aggregation, _poller, _audit
    _db = None
    _blob_store = None
    _locks = None
    _authority = None
    _anomaly = None
    _ingestion = None
    _aggregation = None
    _poller = None
    _audit = None
