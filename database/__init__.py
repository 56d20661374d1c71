"""Database module for managing connections to PostgreSQL.

This module handles:
- Database connection pool initialization
- JSONB codecs for item data and rarity weights
- Schema management
- Connection lifecycle
"""

import json
import logging
import ssl
from typing import Optional, Dict, Any
from urllib.parse import urlparse, parse_qs, urlunparse

import asyncpg
import backoff

from .exceptions import DatabaseError, DatabaseSchemaError
from .lib.schema_manager import SchemaManager

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_schema_manager: Optional[SchemaManager] = None

# sslmode values that require an encrypted connection
SSL_MODES = ('require', 'verify-ca', 'verify-full')

RETRYABLE_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    ConnectionRefusedError,
    OSError,
)


def _get_ssl_context(verify: bool) -> ssl.SSLContext:
    """Create SSL context for hosted PostgreSQL connections."""
    ssl_context = ssl.create_default_context()
    if not verify:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
    return ssl_context


def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    params = parse_qs(urlparse(db_url).query)
    sslmode = params.get('sslmode', ['disable'])[0]

    kwargs: Dict[str, Any] = {
        'server_settings': {
            'statement_timeout': '60000',  # 1 minute
        }
    }
    if sslmode in SSL_MODES:
        kwargs['ssl'] = _get_ssl_context(verify=sslmode != 'require')
    else:
        kwargs['ssl'] = False
    return kwargs


def _strip_query(db_url: str) -> str:
    # asyncpg rejects some libpq query params, connection options come from kwargs
    return urlunparse(urlparse(db_url)._replace(query=''))


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        'jsonb', encoder=json.dumps, decoder=json.loads, schema='pg_catalog'
    )


@backoff.on_exception(backoff.expo, RETRYABLE_ERRORS, max_tries=5)
async def create_database_if_not_exists(db_url: str) -> None:
    """Create the database if it doesn't exist.

    Args:
        db_url: Database connection URL

    Raises:
        Exception: If database creation fails after retries
    """
    parsed = urlparse(db_url)
    db_name = parsed.path.strip('/') or 'postgres'
    if db_name == 'postgres':
        return

    base_url = urlunparse(parsed._replace(path='/postgres', query=''))
    logger.info(f"Connecting to postgres to create {db_name} if needed")

    conn = await asyncpg.connect(base_url, **_get_connection_kwargs(db_url))
    try:
        exists = await conn.fetchval(
            'SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)',
            db_name
        )
        if not exists:
            await conn.execute(f'CREATE DATABASE "{db_name}"')
            logger.info(f"Created database {db_name}")
    except asyncpg.exceptions.InsufficientPrivilegeError as e:
        # Managed databases usually exist already and forbid CREATE DATABASE
        logger.warning(f"Cannot create database {db_name}: {e}")
    finally:
        await conn.close()


@backoff.on_exception(backoff.expo, RETRYABLE_ERRORS, max_tries=5)
async def init_db(db_url: Optional[str] = None, force_recreate: bool = False) -> asyncpg.Pool:
    """Initialize the database connection pool and schema.

    Args:
        db_url: Optional database URL. If not provided, will use settings.
        force_recreate: If True, drop and recreate all tables

    Returns:
        The connection pool

    Raises:
        ValueError: If database URL is not provided
        DatabaseSchemaError: If the schema cannot be applied
    """
    global _pool, _schema_manager

    try:
        if not db_url:
            # Import here to avoid circular imports
            from config import settings_conf
            db_url = settings_conf.get('db_url')
        if not db_url:
            raise ValueError("Database URL not provided")

        await create_database_if_not_exists(db_url)

        _pool = await asyncpg.create_pool(
            _strip_query(db_url),
            min_size=2,
            max_size=20,
            max_queries=10000,
            max_inactive_connection_lifetime=300.0,
            command_timeout=60.0,
            init=_init_connection,
            **_get_connection_kwargs(db_url)
        )

        _schema_manager = SchemaManager(_pool)
        if force_recreate:
            logger.info("Force recreate requested, dropping all tables")
            await _schema_manager.reset()
        await _schema_manager.initialize()
        return _pool

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Returns:
        The connection pool

    Raises:
        RuntimeError: If pool hasn't been initialized
    """
    if not _pool:
        await init_db()
    if not _pool:
        raise RuntimeError("Failed to initialize database pool")
    return _pool


async def close() -> None:
    """Close the database connection pool."""
    global _pool, _schema_manager

    if _pool:
        await _pool.close()
        _pool = None
        _schema_manager = None


# Export public interface
__all__ = ['init_db', 'get_pool', 'close', 'DatabaseError', 'DatabaseSchemaError']
