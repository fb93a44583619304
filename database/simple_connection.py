# database/simple_connection.py
# Engine, session factory and schema bootstrap for the ORM models

import logging
import os
from typing import Dict, Any
from sqlalchemy import create_engine, func
from sqlalchemy.orm import sessionmaker, Session

from database.models import (
    Base, Organization, Contact, Invoice, CommissionRecord, Receipt, ConversationSession
)

logger = logging.getLogger(__name__)


def _resolve_database_url() -> str:
    if "DATABASE_URL" not in os.environ:
        # Use absolute path to ensure consistent database location
        project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        db_file_path = os.path.join(project_dir, "workflow_automation.db")
        return f"sqlite:///{db_file_path}"
    return os.getenv("DATABASE_URL")


DATABASE_URL = _resolve_database_url()

engine = create_engine(
    DATABASE_URL,
    echo=False,  # Set to True for SQL debugging
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {}
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class SimpleDatabase:
    """Schema bootstrap and health statistics over the shared engine"""

    def __init__(self, bind=None):
        self.engine = bind or engine
        self.db_path = str(self.engine.url)
        logger.info(f"📁 Using database: {self.db_path}")

    def init_database(self):
        """Create any missing tables"""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("✅ Database initialized")
        except Exception as e:
            logger.error(f"❌ Database initialization error: {e}")
            raise

    def drop_all(self):
        Base.metadata.drop_all(bind=self.engine)

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        session = SessionLocal()
        try:
            return {
                "database_file": self.db_path,
                "organizations": session.query(func.count(Organization.id)).scalar(),
                "contacts": session.query(func.count(Contact.id)).scalar(),
                "invoices": session.query(func.count(Invoice.id)).scalar(),
                "commission_records": session.query(func.count(CommissionRecord.id)).scalar(),
                "receipts": session.query(func.count(Receipt.id)).scalar(),
                "active_conversations": session.query(func.count(ConversationSession.id)).filter(
                    ConversationSession.is_active == True
                ).scalar(),
                "database_healthy": True
            }
        except Exception as e:
            logger.error(f"❌ Error getting database stats: {e}")
            return {"database_healthy": False, "error": str(e)}
        finally:
            session.close()


# Global database instance
db = SimpleDatabase()


def get_db() -> Session:
    """
    SQLAlchemy dependency injection for route handlers
    Yields a database session that automatically closes after use
    """
    db_session = SessionLocal()
    try:
        yield db_session
    finally:
        db_session.close()

def get_db_session() -> Session:
    """
    Get a SQLAlchemy session for direct use (must be closed manually)
    """
    return SessionLocal()
