import atexit
import logging
from dataclasses import dataclass, field
from threading import BoundedSemaphore, RLock
from typing import Any, Iterable, Iterator, Optional

import psycopg2
from psycopg2.pool import PoolError, ThreadedConnectionPool

logger = logging.getLogger(__name__)


class PoolTimeout(PoolError):
	"""Raised when no connection became idle before the acquire deadline."""


@dataclass(frozen=True)
class ResultSet:
	"""
	Fully materialized query result: column names in select order plus row tuples.
	"""
	columns: tuple[str, ...]
	rows: list[tuple] = field(default_factory=list)

	@property
	def column_count(self) -> int:
		return len(self.columns)

	def column_name(self, index: int) -> str:
		"""Name of the column at zero-based ``index``."""
		return self.columns[index]

	def __iter__(self) -> Iterator[tuple]:
		return iter(self.rows)

	def __len__(self) -> int:
		return len(self.rows)


class BlockingConnectionPool(ThreadedConnectionPool):
	"""
	Fixed-capacity pool whose getconn() waits for a free connection.

	``capacity`` connections are opened eagerly and at most that many are ever
	checked out at once; ``max_slots`` is the ceiling handed to psycopg2 and
	must not be below the capacity. With ``acquire_timeout=None`` a caller waits
	without bound, otherwise PoolTimeout is raised once the deadline passes.
	Returning a connection always frees its slot, even on a closed pool, so
	waiters wake up and get PoolError instead of blocking.
	"""

	def __init__(
		self,
		capacity: int = 5,
		max_slots: int = 50,
		*args,
		acquire_timeout: Optional[float] = None,
		**kwargs
	):
		if capacity <= 0:
			raise ValueError("capacity must be a positive integer.")
		if max_slots < capacity:
			raise ValueError("max_slots must be greater than or equal to capacity.")
		self.capacity = capacity
		self.acquire_timeout = acquire_timeout
		self._slots = BoundedSemaphore(capacity)
		super().__init__(capacity, max_slots, *args, **kwargs)

	def getconn(self, key=None):
		if self.acquire_timeout is None:
			self._slots.acquire()
		elif not self._slots.acquire(timeout=self.acquire_timeout):
			raise PoolTimeout(f"No connection became idle within {self.acquire_timeout}s.")
		try:
			return super().getconn(key)
		except Exception:
			self._slots.release()
			raise

	def putconn(self, conn=None, key=None, close=False):
		try:
			super().putconn(conn, key, close)
		finally:
			self._slots.release()


class PSQLClient:
	"""
	Thread-safe PostgreSQL client over a blocking connection pool.

	Create directly:
		client = PSQLClient(dsn="postgresql://localhost/app", user="postgres", password="...")

	Or reuse an existing pool by connection parameters via the cache:
		client = PSQLClient.get(dsn="postgresql://localhost/app", user="postgres")

	Call `close()` when you're done with a specific client instance, or `PSQLClient.closeall()`
	to close all cached pools (also run at interpreter exit).
	"""

	_cache: dict[tuple, "PSQLClient"] = {}
	_cache_lock = RLock()

	@staticmethod
	def _freeze_conn_kwargs(conn_kwargs: dict[str, Any]) -> tuple[tuple[str, Any], ...] | None:
		"""
		Build a deterministic, hashable representation of extra connect kwargs.
		"""
		if not conn_kwargs:
			return None
		frozen: list[tuple[str, Any]] = []
		for key, value in sorted(conn_kwargs.items()):
			try:
				hash(value)
				frozen.append((key, value))
			except TypeError:
				# Fall back to repr for non-hashable kwargs (e.g., dict/list options).
				frozen.append((key, repr(value)))
		return tuple(frozen)

	@classmethod
	def get(
		cls,
		*,
		dsn: Optional[str] = None,
		user: Optional[str] = None,
		password: Optional[str] = None,
		capacity: int = 5,
		max_slots: int = 50,
		acquire_timeout: Optional[float] = None,
		**conn_kwargs
	) -> "PSQLClient":
		"""
		Return a cached client for the same connection parameters, creating it if needed.
		Extra psycopg2 connection kwargs can be passed via **conn_kwargs (e.g., sslmode="require").
		"""
		key = (
			dsn, user, password,
			cls._freeze_conn_kwargs(conn_kwargs),
			capacity, max_slots, acquire_timeout
		)
		with cls._cache_lock:
			client = cls._cache.get(key)
			if client is None or client._closed:
				client = cls(
					dsn=dsn, user=user, password=password, capacity=capacity,
					max_slots=max_slots, acquire_timeout=acquire_timeout, **conn_kwargs
				)
				client._cache_key = key
				cls._cache[key] = client
				logger.debug("Created new cached PSQLClient for %s", client)
			else:
				logger.debug("Reusing cached PSQLClient for %s", client)
			return client

	@classmethod
	def from_settings(cls, settings) -> "PSQLClient":
		"""Cached client for a DataSourceSettings instance."""
		return cls.get(**settings.client_kwargs())

	@classmethod
	def closeall(cls) -> None:
		"""Close all cached connection pools and clear the cache."""
		with cls._cache_lock:
			clients = list(cls._cache.values())
			cls._cache.clear()
		for client in clients:
			try:
				client.close()
			except Exception:
				logger.exception("Error closing pooled client")

	def __init__(
		self,
		*,
		dsn: Optional[str] = None,
		user: Optional[str] = None,
		password: Optional[str] = None,
		capacity: int = 5,
		max_slots: int = 50,
		acquire_timeout: Optional[float] = None,
		**conn_kwargs
	):
		self.dsn = dsn
		self.user = user
		self._closed = False
		self._state_lock = RLock()
		self._cache_key: tuple | None = None
		self._conn_kwargs = dict(conn_kwargs)
		if dsn is not None:
			self._conn_kwargs["dsn"] = dsn
		if user is not None:
			self._conn_kwargs["user"] = user
		if password is not None:
			self._conn_kwargs["password"] = password

		logger.info("Opening %s pooled connections for %s", capacity, self._describe_target())

		self.pool = BlockingConnectionPool(
			capacity, max_slots,
			acquire_timeout=acquire_timeout,
			**self._conn_kwargs
		)

	def _describe_target(self) -> str:
		return f"{self.user or ''}@{self.dsn or ''}"

	def __repr__(self) -> str:
		return f"<PSQLClient {self._describe_target()} capacity={getattr(self.pool, 'capacity', '?')}>"

	# ---------- Pool plumbing ----------
	def close(self) -> None:
		"""Close this client's pool, including connections still checked out."""
		with self._state_lock:
			if self._closed:
				return
			self._closed = True
		try:
			self.pool.closeall()
			logger.info("Closed connection pool for %s", self._describe_target())
		except Exception:
			logger.exception("Error closing connection pool")
		finally:
			cache_key = self._cache_key
			if cache_key is not None:
				with self.__class__._cache_lock:
					cached = self.__class__._cache.get(cache_key)
					if cached is self:
						self.__class__._cache.pop(cache_key, None)

	def _get_conn(self):
		with self._state_lock:
			if self._closed:
				raise RuntimeError("PSQLClient is closed.")
		return self.pool.getconn()

	def _put_conn(self, conn):
		try:
			self.pool.putconn(conn)
		except Exception:
			# If the pool is already closed while returning a connection, suppress.
			with self._state_lock:
				if not self._closed:
					raise

	# ---------- Execution helpers ----------
	@staticmethod
	def _normalize_query(conn, query) -> str:
		if isinstance(query, str):
			return query
		return query.as_string(conn)

	@staticmethod
	def _result_from_cursor(cur) -> ResultSet | None:
		if cur.description is None:
			return None
		colnames = tuple(d[0] for d in cur.description)
		return ResultSet(colnames, [tuple(r) for r in cur.fetchall()])

	def _execute_on_conn(self, conn, query, params: Optional[Iterable] = None) -> ResultSet | None:
		"""
		Run one statement on an already-acquired connection.
		Commits on success; rolls back on exception.
		Without params the text is sent as-is, so a literal % needs no escaping.
		"""
		params = tuple(params) if params else None
		try:
			query_text = self._normalize_query(conn, query)
			logger.debug("Executing: %s | params=%s", query_text, params)
			with conn.cursor() as cur:
				cur.execute(query_text, params)
				result = self._result_from_cursor(cur)
			conn.commit()
			return result
		except Exception:
			conn.rollback()
			raise

	def execute(self, query, params: Optional[Iterable] = None, *, silent: bool = False) -> bool:
		"""
		Run a statement (string or psycopg2.sql Composable) and report success.

		The connection always goes back to the pool. A failed statement returns
		False when ``silent`` is set; otherwise it is logged and re-raised.
		"""
		conn = self._get_conn()
		try:
			self._execute_on_conn(conn, query, params)
			return True
		except psycopg2.Error as exc:
			if silent:
				logger.debug("Statement failed silently: %s", exc)
				return False
			logger.error("Statement failed: %s", str(exc).strip())
			raise
		finally:
			self._put_conn(conn)

	def query(self, query, params: Optional[Iterable] = None) -> ResultSet:
		"""
		Run a statement and return its rows. Rows are fetched before the
		connection is released, so the result stays valid afterwards.
		"""
		conn = self._get_conn()
		try:
			result = self._execute_on_conn(conn, query, params)
		finally:
			self._put_conn(conn)
		return result if result is not None else ResultSet(())


atexit.register(PSQLClient.closeall)
