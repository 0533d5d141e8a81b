"""
Database connection and transaction management using raw PostgreSQL
Every statement runs under a bounded statement timeout; the booking core relies on
single-statement conditional updates rather than application-side locking
"""
import logging
import os
from contextlib import contextmanager
from pathlib import Path

import psycopg2
from psycopg2 import pool, extras, sql
from psycopg2.extensions import ISOLATION_LEVEL_READ_COMMITTED
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = 'postgresql://localhost/flysafari_booking'


class StoreUnavailableError(RuntimeError):
    """The store timed out or could not be reached; the outcome of the call is unknown.

    Callers must treat this as "verify later" and never as success. Webhook handlers
    surface it to the payment provider as a failure so that delivery is retried.
    """


class LoggingDictCursor(extras.LoggingCursor, extras.RealDictCursor):
    """Dict rows, with every statement passed to the LoggingConnection's logger"""


def dict_cursor(conn):
    """Open a dict cursor on ``conn``, logging statements when echo is enabled"""
    if isinstance(conn, extras.LoggingConnection):
        return conn.cursor(cursor_factory=LoggingDictCursor)
    return conn.cursor(cursor_factory=extras.RealDictCursor)


class DatabaseManager:
    """
    Database manager with transaction support and connection pooling
    """

    def __init__(self, database_url=None, echo=False, min_connections=None,
                 max_connections=None, statement_timeout_ms=None, connect_timeout=None):
        """
        Initialize database manager

        Args:
            database_url: Database connection URL (defaults to env variable)
            echo: Whether to log SQL statements
            min_connections: Pool lower bound (DB_POOL_MIN)
            max_connections: Pool upper bound (DB_POOL_MAX)
            statement_timeout_ms: Server-side statement timeout (DB_STATEMENT_TIMEOUT_MS)
            connect_timeout: Seconds to wait for a new connection (DB_CONNECT_TIMEOUT)
        """
        self.database_url = database_url or os.getenv('DATABASE_URL', DEFAULT_DATABASE_URL)
        self.echo = echo or os.getenv('DB_ECHO', 'False').lower() == 'true'
        self.statement_timeout_ms = int(
            statement_timeout_ms or os.getenv('DB_STATEMENT_TIMEOUT_MS', '5000')
        )
        self.connect_timeout = int(connect_timeout or os.getenv('DB_CONNECT_TIMEOUT', '5'))

        minconn = int(min_connections or os.getenv('DB_POOL_MIN', '2'))
        maxconn = int(max_connections or os.getenv('DB_POOL_MAX', '60'))

        try:
            self.connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=minconn,
                maxconn=maxconn,
                dsn=self.database_url,
                connect_timeout=self.connect_timeout,
                options=f'-c statement_timeout={self.statement_timeout_ms}',
                connection_factory=extras.LoggingConnection if self.echo else None,
            )
        except psycopg2.Error as e:
            raise StoreUnavailableError(f"Failed to create database connection pool: {e}") from e

    def get_connection(self):
        """Get a connection from the pool"""
        try:
            conn = self.connection_pool.getconn()
        except (psycopg2.pool.PoolError, psycopg2.OperationalError) as e:
            raise StoreUnavailableError(f"No database connection available: {e}") from e
        if self.echo:
            conn.initialize(logger)
        return conn

    def return_connection(self, conn, close=False):
        """Return a connection to the pool"""
        self.connection_pool.putconn(conn, close=close)

    def close_all_connections(self):
        """Close all connections in the pool"""
        if self.connection_pool:
            self.connection_pool.closeall()

    def create_tables(self):
        """Create all database tables from schema"""
        schema_file = Path(__file__).parent / 'schema.sql'

        if not schema_file.exists():
            raise FileNotFoundError(f"Schema file not found: {schema_file}")

        schema_sql = schema_file.read_text()

        with self.transaction() as conn:
            with conn.cursor() as cursor:
                cursor.execute(schema_sql)

    def drop_tables(self):
        """Drop all database tables (use with caution!)"""
        with self.transaction() as conn:
            with conn.cursor() as cursor:
                cursor.execute("""
                    SELECT tablename FROM pg_tables
                    WHERE schemaname = 'public'
                """)
                tables = [row[0] for row in cursor.fetchall()]

                for table in tables:
                    cursor.execute(sql.SQL("DROP TABLE IF EXISTS {} CASCADE").format(
                        sql.Identifier(table)
                    ))

    @contextmanager
    def transaction(self, isolation_level=None):
        """
        Provide a transactional scope with a connection

        Commits on success and rolls back on any exception. Timeouts and lost
        connections are re-raised as StoreUnavailableError.

        Usage:
            with db.transaction() as conn:
                with conn.cursor() as cursor:
                    cursor.execute("UPDATE flights ...")
        """
        conn = self.get_connection()
        broken = False
        try:
            conn.set_isolation_level(isolation_level or ISOLATION_LEVEL_READ_COMMITTED)
            yield conn
            conn.commit()
        except psycopg2.OperationalError as e:
            # statement_timeout cancellations and deadlocks land here too
            broken = conn.closed != 0
            if not broken:
                conn.rollback()
            logger.error("Store operation failed: %s", e)
            raise StoreUnavailableError(str(e)) from e
        except Exception:
            if conn.closed == 0:
                conn.rollback()
            else:
                broken = True
            raise
        finally:
            self.return_connection(conn, close=broken)

    @contextmanager
    def get_cursor(self, cursor_factory=None):
        """
        Get a dict cursor inside its own transaction

        Usage:
            with db.get_cursor() as cursor:
                cursor.execute("SELECT * FROM bookings")
                results = cursor.fetchall()
        """
        with self.transaction() as conn:
            cursor = conn.cursor(cursor_factory=cursor_factory) if cursor_factory else dict_cursor(conn)
            with cursor:
                yield cursor


# Global database manager instance
_db_manager = None


def get_db_manager() -> DatabaseManager:
    """Get or create global database manager instance"""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def set_db_manager(db_manager: DatabaseManager | None) -> None:
    """Override the global database manager instance.

    This is primarily used in test fixtures so that the service layer operates on
    the test database instead of the default one.
    Passing ``None`` resets the singleton so the next
    ``get_db_manager`` call recreates it with default settings.
    """
    global _db_manager
    _db_manager = db_manager


@contextmanager
def cursor_for(conn=None):
    """Dict cursor joined to ``conn``'s transaction, or in a fresh transaction when ``conn`` is None"""
    if conn is None:
        with get_db_manager().get_cursor() as cursor:
            yield cursor
    else:
        with dict_cursor(conn) as cursor:
            yield cursor


def init_db():
    """Initialize database with tables"""
    db_manager = get_db_manager()
    db_manager.create_tables()
    logger.info("Database initialized")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
