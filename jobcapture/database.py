"""Job posting store."""
from datetime import datetime
from typing import Optional, Protocol
import uuid
from sqlalchemy import create_engine, make_url, Column, String, DateTime, Text, func
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
import logging

from .models import JobPosting

logger = logging.getLogger(__name__)

Base = declarative_base()


class JobRepository(Protocol):
    """Store consulted before fetching and written after a successful extraction."""

    def find_by_url(self, url: str) -> Optional[JobPosting]:
        ...

    def save(self, posting: JobPosting) -> str:
        ...


class JobPostingModel(Base):
    """SQLAlchemy model for extracted job postings."""
    __tablename__ = 'job_postings'

    id = Column(String(36), primary_key=True)
    source_url = Column(String(1024), nullable=False, unique=True, index=True)
    title = Column(String(255), nullable=False, index=True)
    company = Column(String(255), nullable=False, index=True)
    location = Column(String(255), nullable=True)
    salary_range = Column(String(255), nullable=True)
    experience_required = Column(String(255), nullable=True)
    education_required = Column(String(255), nullable=True)
    raw_description = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.now)


class Database:
    """SQLAlchemy-backed ``JobRepository``."""

    def __init__(self, db_url: str = "sqlite:///jobs.db"):
        """Initialize database connection.

        Args:
            db_url: Database connection URL
        """
        url = make_url(db_url)
        if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
            # One shared connection, so worker threads see the same in-memory tables.
            self.engine = create_engine(db_url, poolclass=StaticPool,
                                        connect_args={"check_same_thread": False})
        else:
            self.engine = create_engine(db_url)
        self.Session = sessionmaker(bind=self.engine)
        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        Base.metadata.create_all(self.engine)

    @staticmethod
    def _to_posting(model: JobPostingModel) -> JobPosting:
        return JobPosting(
            id=model.id,
            source_url=model.source_url,
            title=model.title,
            company=model.company,
            location=model.location,
            salary_range=model.salary_range,
            experience_required=model.experience_required,
            education_required=model.education_required,
            raw_description=model.raw_description,
            created_at=model.created_at,
        )

    def find_by_url(self, url: str) -> Optional[JobPosting]:
        """Get the stored posting for a source URL, if any."""
        with self.Session() as session:
            model = session.query(JobPostingModel).filter_by(source_url=url).first()
            return self._to_posting(model) if model else None

    def save(self, posting: JobPosting) -> str:
        """Store a posting unless its source URL is already stored.

        Args:
            posting: Extracted job posting

        Returns:
            Identifier of the stored row, existing or new

        Raises:
            SQLAlchemyError: If the write fails
        """
        try:
            with self.Session() as session:
                existing = session.query(JobPostingModel).filter_by(source_url=posting.source_url).first()
                if existing:
                    logger.info(f"Job posting for {posting.source_url} already stored as {existing.id}")
                    return existing.id

                model = JobPostingModel(
                    id=posting.id or str(uuid.uuid4()),
                    source_url=posting.source_url,
                    title=posting.title,
                    company=posting.company,
                    location=posting.location,
                    salary_range=posting.salary_range,
                    experience_required=posting.experience_required,
                    education_required=posting.education_required,
                    raw_description=posting.raw_description,
                    created_at=posting.created_at or datetime.now(),
                )
                session.add(model)
                session.commit()
                posting.created_at = model.created_at
                return model.id
        except IntegrityError:
            # A concurrent save won the unique source_url constraint.
            existing = self.find_by_url(posting.source_url)
            if existing is None:
                raise
            return existing.id
        except SQLAlchemyError as e:
            logger.error(f"Error saving job posting {posting.source_url}: {e}")
            raise

    def count(self) -> int:
        """Number of stored postings."""
        with self.Session() as session:
            return session.query(func.count(JobPostingModel.id)).scalar()
