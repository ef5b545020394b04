import logging

from learnflow.db.session import engine, Base

logger = logging.getLogger(__name__)


def init_db(bind=None):
    """Initialize database tables"""
    # Import all models to ensure they are registered with SQLAlchemy
    from learnflow.models.job import VideoProcess  # noqa: F401
    from learnflow.models.quota import QuotaUsage, QuotaUsageLog, QuotaAlert, UserSubscription  # noqa: F401

    # Create all tables
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created successfully")


if __name__ == "__main__":
    init_db()
