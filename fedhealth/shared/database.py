"""
Database models and connection management for federated health learning.
Uses SQLAlchemy for ORM and persistence of model snapshots and session records.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import json
import logging
import os

from sqlalchemy import (
    Column, DateTime, Float, Integer, LargeBinary, String, Text, create_engine, text
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .interfaces import ModelStoreInterface
from .models import ModelType, ModelVersion, ModelWeights
from .serialization import ModelWeightSerializer

logger = logging.getLogger(__name__)

Base = declarative_base()


class ModelSnapshotModel(Base):
    """Database model for versioned model snapshots."""

    __tablename__ = 'model_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    model_type = Column(String(50), nullable=False, index=True)
    version = Column(String(32), nullable=False)
    version_major = Column(Integer, nullable=False)
    version_minor = Column(Integer, nullable=False)
    version_patch = Column(Integer, nullable=False)
    weights = Column(LargeBinary, nullable=False)
    loss = Column(Float)
    session_id = Column(String(64), index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'model_type': self.model_type,
            'version': self.version,
            'loss': self.loss,
            'session_id': self.session_id,
            'weights_bytes': len(self.weights) if self.weights else 0,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class SessionRecordModel(Base):
    """Database model for federated session lifecycle records."""

    __tablename__ = 'session_records'

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False, unique=True, index=True)
    model_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)
    participants = Column(Text)  # JSON array
    rounds_completed = Column(Integer, default=0)
    model_version = Column(String(32))
    last_error = Column(Text)
    config_json = Column(Text)
    started_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'session_id': self.session_id,
            'model_type': self.model_type,
            'status': self.status,
            'participants': json.loads(self.participants) if self.participants else [],
            'rounds_completed': self.rounds_completed,
            'model_version': self.model_version,
            'last_error': self.last_error,
            'config': json.loads(self.config_json) if self.config_json else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }


class DatabaseManager:
    """Manages database connections and sessions."""

    def __init__(self, database_url: str, echo: bool = False):
        """
        Initialize database manager.

        Args:
            database_url: SQLAlchemy database URL
            echo: Whether to log SQL statements
        """
        self.database_url = database_url
        self.engine = create_engine(database_url, echo=echo, future=True)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        logger.info(f"Database manager initialized for {self.engine.url.render_as_string(hide_password=True)}")

    def create_tables(self):
        """Create all database tables."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created")

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def test_connection(self) -> bool:
        """Test database connection."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False


class ModelRepository(ModelStoreInterface):
    """Repository for model snapshots and session records."""

    def __init__(self, db_manager: DatabaseManager):
        """
        Initialize repository.

        Args:
            db_manager: Database manager instance
        """
        self.db_manager = db_manager
        self.serializer = ModelWeightSerializer()

    def store_snapshot(self,
                       model_type: ModelType,
                       version: str,
                       weights: ModelWeights,
                       loss: Optional[float] = None,
                       session_id: Optional[str] = None) -> None:
        """Store a model snapshot under a version."""
        parsed = ModelVersion.parse(version)
        blob = self.serializer.serialize_weights(weights)

        with self.db_manager.get_session() as session:
            snapshot = ModelSnapshotModel(
                model_type=model_type.value,
                version=str(parsed),
                version_major=parsed.major,
                version_minor=parsed.minor,
                version_patch=parsed.patch,
                weights=blob,
                loss=loss,
                session_id=session_id
            )
            session.add(snapshot)
            session.commit()

        logger.info(f"Stored {model_type.value} model snapshot v{parsed} ({len(blob)} bytes)")

    def _latest_snapshot(self, session: Session, model_type: ModelType) -> Optional[ModelSnapshotModel]:
        return session.query(ModelSnapshotModel).filter(
            ModelSnapshotModel.model_type == model_type.value
        ).order_by(
            ModelSnapshotModel.version_major.desc(),
            ModelSnapshotModel.version_minor.desc(),
            ModelSnapshotModel.version_patch.desc(),
            ModelSnapshotModel.id.desc()
        ).first()

    def load_latest(self, model_type: ModelType) -> Optional[Tuple[str, ModelWeights]]:
        """Load the latest snapshot for a model type."""
        with self.db_manager.get_session() as session:
            snapshot = self._latest_snapshot(session, model_type)
            if snapshot is None:
                return None
            return snapshot.version, self.serializer.deserialize_weights(snapshot.weights)

    def latest_version(self, model_type: ModelType) -> Optional[str]:
        """Get the latest version for a model type."""
        with self.db_manager.get_session() as session:
            snapshot = self._latest_snapshot(session, model_type)
            return snapshot.version if snapshot else None

    def list_snapshots(self, model_type: ModelType, limit: int = 20) -> List[Dict[str, Any]]:
        """List recent snapshots for a model type."""
        with self.db_manager.get_session() as session:
            snapshots = session.query(ModelSnapshotModel).filter(
                ModelSnapshotModel.model_type == model_type.value
            ).order_by(ModelSnapshotModel.id.desc()).limit(limit).all()
            return [s.to_dict() for s in snapshots]

    def record_session(self, session_data: Dict[str, Any]) -> None:
        """Create or update a session lifecycle record."""
        with self.db_manager.get_session() as session:
            record = session.query(SessionRecordModel).filter(
                SessionRecordModel.session_id == session_data['id']
            ).first()

            if record is None:
                record = SessionRecordModel(
                    session_id=session_data['id'],
                    model_type=session_data['model_type'],
                    participants=json.dumps(session_data.get('participants', [])),
                    config_json=json.dumps(session_data.get('configuration', {})),
                    started_at=datetime.fromisoformat(session_data['start_time'])
                    if session_data.get('start_time') else None,
                    status=session_data['status']
                )
                session.add(record)

            record.status = session_data['status']
            record.rounds_completed = session_data.get('rounds_completed', 0)
            record.model_version = session_data.get('model_version')
            record.last_error = session_data.get('last_error')
            record.updated_at = datetime.utcnow()

            session.commit()

        logger.debug(f"Recorded session {session_data['id']} ({session_data['status']})")

    def get_session_record(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Get a session record by id."""
        with self.db_manager.get_session() as session:
            record = session.query(SessionRecordModel).filter(
                SessionRecordModel.session_id == session_id
            ).first()
            return record.to_dict() if record else None


def create_database_manager(database_url: Optional[str] = None) -> DatabaseManager:
    """
    Factory function to create database manager with tables in place.

    Args:
        database_url: Database connection URL (uses environment variable if None)

    Returns:
        DatabaseManager: Configured database manager
    """
    if not database_url:
        database_url = os.getenv('FEDHEALTH_DATABASE_URL', 'sqlite:///fedhealth.db')

    db_manager = DatabaseManager(database_url)
    db_manager.create_tables()
    return db_manager
