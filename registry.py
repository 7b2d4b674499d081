"""
Project Registry Module
=======================

Cross-platform project registry for storing project name to path mappings.
Uses SQLite database stored at ~/.forge/registry.db.

Sessions only need two questions answered (does this project exist, where
does it live), expressed by the ``ProjectLookup`` protocol;
``RegistryProjectLookup`` answers them from this database.
"""

import argparse
import logging
import os
import re
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol

from sqlalchemy import Column, DateTime, String, create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from forge_paths import get_config_dir

# Module logger
logger = logging.getLogger(__name__)

PROJECT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,50}$")

# SQLite connection settings
SQLITE_TIMEOUT = 30  # seconds to wait for database lock


# =============================================================================
# Exceptions
# =============================================================================

class RegistryError(Exception):
    """Base registry exception."""
    pass


# =============================================================================
# SQLAlchemy Model
# =============================================================================

class Base(DeclarativeBase):
    """SQLAlchemy 2.0 style declarative base."""
    pass


class Project(Base):
    """SQLAlchemy model for registered projects."""
    __tablename__ = "projects"

    name = Column(String(50), primary_key=True, index=True)
    path = Column(String, nullable=False)  # POSIX format for cross-platform
    created_at = Column(DateTime, nullable=False)


# =============================================================================
# Database Connection
# =============================================================================

# Module-level singleton for database engine with thread-safe initialization
_engine = None
_SessionLocal = None
_engine_lock = threading.Lock()


def get_registry_path() -> Path:
    """Get the path to the registry database, creating ~/.forge if needed."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir / "registry.db"


def _get_engine():
    """
    Get or create the database engine (thread-safe singleton pattern).

    Returns:
        Tuple of (engine, SessionLocal)
    """
    global _engine, _SessionLocal

    # Double-checked locking for thread safety
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                db_path = get_registry_path()
                engine = create_engine(
                    f"sqlite:///{db_path.as_posix()}",
                    connect_args={
                        "check_same_thread": False,
                        "timeout": SQLITE_TIMEOUT,
                    }
                )
                Base.metadata.create_all(bind=engine)
                _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
                _engine = engine
                logger.debug("Initialized registry database at: %s", db_path)

    return _engine, _SessionLocal


@contextmanager
def _get_session():
    """
    Context manager for database sessions with automatic commit/rollback.

    Yields:
        SQLAlchemy session
    """
    _, SessionLocal = _get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================================
# Project Functions
# =============================================================================

def validate_project_name(name: str) -> bool:
    return bool(name) and PROJECT_NAME_PATTERN.match(name) is not None


def register_project(name: str, path: Path) -> None:
    """
    Register a new project in the registry.

    Args:
        name: The project name (unique identifier).
        path: The project directory; stored as an absolute path.

    Raises:
        ValueError: If project name is invalid.
        RegistryError: If a project with that name already exists.
    """
    if not validate_project_name(name):
        raise ValueError(
            "Invalid project name. Use only letters, numbers, hyphens, "
            "and underscores (1-50 chars)."
        )

    path = Path(path).resolve()

    with _get_session() as session:
        existing = session.query(Project).filter(Project.name == name).first()
        if existing:
            logger.warning("Attempted to register duplicate project: %s", name)
            raise RegistryError(f"Project '{name}' already exists in registry")

        session.add(Project(name=name, path=path.as_posix(), created_at=datetime.now()))

    logger.info("Registered project '%s' at path: %s", name, path)


def unregister_project(name: str) -> bool:
    """
    Remove a project from the registry.

    Returns:
        True if removed, False if project wasn't found.
    """
    with _get_session() as session:
        project = session.query(Project).filter(Project.name == name).first()
        if not project:
            logger.debug("Attempted to unregister non-existent project: %s", name)
            return False
        session.delete(project)

    logger.info("Unregistered project: %s", name)
    return True


def get_project_path(name: str) -> Path | None:
    """Look up a project's path by name, or None if not registered."""
    with _get_session() as session:
        project = session.query(Project).filter(Project.name == name).first()
        if project is None:
            return None
        return Path(project.path)


def list_registered_projects() -> dict[str, dict[str, Any]]:
    """Get all registered projects as ``{name: {"path", "created_at"}}``."""
    with _get_session() as session:
        return {
            p.name: {
                "path": p.path,
                "created_at": p.created_at.isoformat() if p.created_at else None,
            }
            for p in session.query(Project).all()
        }


def validate_project_path(path: Path) -> tuple[bool, str]:
    """
    Validate that a project path is an accessible, writable directory.

    Returns:
        Tuple of (is_valid, error_message).
    """
    path = Path(path).resolve()

    if not path.exists():
        return False, f"Path does not exist: {path}"
    if not path.is_dir():
        return False, f"Path is not a directory: {path}"
    if not os.access(path, os.R_OK):
        return False, f"No read permission: {path}"
    if not os.access(path, os.W_OK):
        return False, f"No write permission: {path}"

    return True, ""


# =============================================================================
# Session-facing lookup
# =============================================================================

class ProjectLookup(Protocol):
    """What the session layer needs from a project registry."""

    def exists(self, project_name: str) -> bool: ...

    def path(self, project_name: str) -> Optional[Path]: ...


class RegistryProjectLookup:
    """ProjectLookup backed by the SQLite registry.

    A project only "exists" if it is registered and its directory is present.
    """

    def exists(self, project_name: str) -> bool:
        if not validate_project_name(project_name):
            return False
        path = get_project_path(project_name)
        return path is not None and path.is_dir()

    def path(self, project_name: str) -> Optional[Path]:
        if not validate_project_name(project_name):
            return None
        return get_project_path(project_name)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Manage the Forge project registry")
    sub = parser.add_subparsers(dest="action", required=True)
    add = sub.add_parser("add", help="Register a project directory")
    add.add_argument("name")
    add.add_argument("path", type=Path)
    remove = sub.add_parser("remove", help="Unregister a project")
    remove.add_argument("name")
    sub.add_parser("list", help="List registered projects")
    args = parser.parse_args(argv)

    if args.action == "add":
        valid, error = validate_project_path(args.path)
        if not valid:
            print(error, file=sys.stderr)
            return 1
        try:
            register_project(args.name, args.path)
        except (ValueError, RegistryError) as e:
            print(e, file=sys.stderr)
            return 1
        print(f"Registered {args.name}")
    elif args.action == "remove":
        if not unregister_project(args.name):
            print(f"Project '{args.name}' is not registered", file=sys.stderr)
            return 1
        print(f"Unregistered {args.name}")
    else:
        for name, info in sorted(list_registered_projects().items()):
            print(f"{name}\t{info['path']}")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    sys.exit(main())
