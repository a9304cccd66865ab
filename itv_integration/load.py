"""Persistence boundary for resolved ITV entities.

The pipeline talks to storage only through ``StationRepository``:
province existence checks and saves, locality lookup and save (which
returns the authoritative locality code used for station linking) and
station saves. Two implementations:

- ``InMemoryRepository``: dict-backed, sequential codes. Used for dry runs
  and tests.
- ``SnowflakeRepository``: parameterized SQL against the
  ``ITV.PUBLIC.PROVINCIA``, ``LOCALIDAD`` and ``ESTACION`` tables. Codes for
  new localities and stations are drawn from sequences before the insert.
"""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol

import snowflake.connector

from itv_integration.models import Locality, LocalityKey, Province, Station

if TYPE_CHECKING:
    from snowflake.connector import SnowflakeConnection

logger: Final[logging.Logger] = logging.getLogger(__name__)

# ---- Snowflake connection defaults -----------------------------------------

_DEFAULT_ROLE: Final[str] = "ITV_LOADER"
_DEFAULT_WAREHOUSE: Final[str] = "ITV_WH"
_DEFAULT_DATABASE: Final[str] = "ITV"
_DEFAULT_SCHEMA: Final[str] = "PUBLIC"
_TOML_SECTION: Final[str] = "itv"

_LOGIN_TIMEOUT: Final[int] = 30
_NETWORK_TIMEOUT: Final[int] = 60

PROVINCE_TABLE: Final[str] = "ITV.PUBLIC.PROVINCIA"
LOCALITY_TABLE: Final[str] = "ITV.PUBLIC.LOCALIDAD"
STATION_TABLE: Final[str] = "ITV.PUBLIC.ESTACION"
_LOCALITY_SEQUENCE: Final[str] = "ITV.PUBLIC.LOCALIDAD_SEQ"
_STATION_SEQUENCE: Final[str] = "ITV.PUBLIC.ESTACION_SEQ"

SCHEMA_DDL: Final[tuple[str, ...]] = (
    f"CREATE SEQUENCE IF NOT EXISTS {_LOCALITY_SEQUENCE} START = 1 INCREMENT = 1",
    f"CREATE SEQUENCE IF NOT EXISTS {_STATION_SEQUENCE} START = 1 INCREMENT = 1",
    f"CREATE TABLE IF NOT EXISTS {PROVINCE_TABLE} ("
    "CODIGO NUMBER(2) PRIMARY KEY, "
    "NOMBRE VARCHAR NOT NULL)",
    f"CREATE TABLE IF NOT EXISTS {LOCALITY_TABLE} ("
    "CODIGO NUMBER PRIMARY KEY, "
    "NOMBRE VARCHAR NOT NULL, "
    "COD_PROVINCIA NUMBER(2) NOT NULL REFERENCES "
    f"{PROVINCE_TABLE}(CODIGO), "
    "UNIQUE (NOMBRE, COD_PROVINCIA))",
    f"CREATE TABLE IF NOT EXISTS {STATION_TABLE} ("
    "COD_ESTACION NUMBER PRIMARY KEY, "
    "NOMBRE VARCHAR NOT NULL, "
    "TIPO VARCHAR NOT NULL, "
    "DIRECCION VARCHAR, "
    "CODIGO_POSTAL NUMBER(5), "
    "LONGITUD FLOAT, "
    "LATITUD FLOAT, "
    "DESCRIPCION VARCHAR, "
    "HORARIO VARCHAR, "
    "CONTACTO VARCHAR, "
    "URL VARCHAR, "
    "COD_LOCALIDAD NUMBER REFERENCES "
    f"{LOCALITY_TABLE}(CODIGO))",
)


# ---- Exceptions -------------------------------------------------------------


class LoadError(Exception):
    """Raised when a persistence operation fails.

    Attributes:
        table: Target table name, if applicable.
        entity: Name of the entity being written, if applicable.
    """

    def __init__(
        self,
        message: str,
        *,
        table: str = "",
        entity: str = "",
    ) -> None:
        self.table: Final[str] = table
        self.entity: Final[str] = entity
        super().__init__(message)


# ---- Repository protocol ----------------------------------------------------


class StationRepository(Protocol):
    """Storage operations the integration pipeline depends on."""

    def province_exists(self, code: int) -> bool: ...

    def save_province(self, province: Province) -> None: ...

    def find_locality(self, name: str, province_code: int) -> int | None: ...

    def save_locality(self, locality: Locality) -> int: ...

    def save_station(self, station: Station) -> int: ...


# ---- In-memory implementation -----------------------------------------------


class InMemoryRepository:
    """Dict-backed repository with sequential locality and station codes.

    State persists across region runs on the same instance, so a locality
    saved by one region is found by the next.
    """

    def __init__(self) -> None:
        self.provinces: dict[int, Province] = {}
        self.localities: dict[LocalityKey, Locality] = {}
        self.stations: dict[int, Station] = {}
        self._next_locality_code = 1
        self._next_station_code = 1

    def province_exists(self, code: int) -> bool:
        return code in self.provinces

    def save_province(self, province: Province) -> None:
        self.provinces[province.code] = province

    def find_locality(self, name: str, province_code: int) -> int | None:
        locality = self.localities.get((name, province_code))
        return locality.code if locality is not None else None

    def save_locality(self, locality: Locality) -> int:
        if locality.province_code not in self.provinces:
            raise LoadError(
                f"Province {locality.province_code} does not exist",
                table="LOCALIDAD",
                entity=locality.name,
            )
        code = self._next_locality_code
        self._next_locality_code += 1
        self.localities[locality.key] = Locality(
            name=locality.name, province_code=locality.province_code, code=code
        )
        return code

    def save_station(self, station: Station) -> int:
        code = self._next_station_code
        self._next_station_code += 1
        self.stations[code] = station
        return code


# ---- Connection manager -----------------------------------------------------


class SnowflakeConnectionManager:
    """Manage Snowflake connections with layered credential resolution.

    Credential resolution order:
      1. Explicit constructor arguments
      2. Environment variables (SNOWFLAKE_ACCOUNT, SNOWFLAKE_USER,
         SNOWFLAKE_PASSWORD)
      3. ``~/.snowflake/connections.toml`` ``[itv]`` section

    Implements the context manager protocol to guarantee connection
    cleanup on scope exit.
    """

    def __init__(
        self,
        *,
        account: str | None = None,
        user: str | None = None,
        password: str | None = None,
        role: str = _DEFAULT_ROLE,
        warehouse: str = _DEFAULT_WAREHOUSE,
        database: str = _DEFAULT_DATABASE,
        schema: str = _DEFAULT_SCHEMA,
    ) -> None:
        self._account = account
        self._user = user
        self._password = password
        self._role = role
        self._warehouse = warehouse
        self._database = database
        self._schema = schema
        self._connection: SnowflakeConnection | None = None

    def _resolve_credentials(self) -> dict[str, str]:
        """Resolve Snowflake credentials from available sources."""
        account = self._account or os.environ.get("SNOWFLAKE_ACCOUNT", "")
        user = self._user or os.environ.get("SNOWFLAKE_USER", "")
        password = self._password or os.environ.get("SNOWFLAKE_PASSWORD", "")

        if account and user and password:
            return {"account": account, "user": user, "password": password}

        toml_path = Path.home() / ".snowflake" / "connections.toml"
        if toml_path.exists():
            with toml_path.open("rb") as fh:
                config = tomllib.load(fh)
            section = config.get(_TOML_SECTION, {})
            account = account or str(section.get("account", ""))
            user = user or str(section.get("user", ""))
            password = password or str(section.get("password", ""))
            if account and user and password:
                return {"account": account, "user": user, "password": password}

        raise LoadError(
            "Snowflake credentials not found. Set SNOWFLAKE_ACCOUNT, "
            "SNOWFLAKE_USER, and SNOWFLAKE_PASSWORD environment variables "
            f"or configure ~/.snowflake/connections.toml with an "
            f"[{_TOML_SECTION}] section."
        )

    def connect(self) -> SnowflakeConnection:
        """Establish an authenticated Snowflake connection.

        Raises:
            LoadError: On authentication or network failure.
        """
        credentials = self._resolve_credentials()
        try:
            conn: SnowflakeConnection = snowflake.connector.connect(
                account=credentials["account"],
                user=credentials["user"],
                password=credentials["password"],
                role=self._role,
                warehouse=self._warehouse,
                database=self._database,
                schema=self._schema,
                login_timeout=_LOGIN_TIMEOUT,
                network_timeout=_NETWORK_TIMEOUT,
            )
        except snowflake.connector.errors.Error as exc:
            errno = getattr(exc, "errno", "unknown")
            msg = getattr(exc, "msg", str(exc))
            raise LoadError(
                f"Snowflake connection failed: {msg} (error code: {errno})"
            ) from exc
        self._connection = conn
        return conn

    def __enter__(self) -> SnowflakeConnection:
        return self.connect()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None


# ---- Snowflake implementation -----------------------------------------------


class SnowflakeRepository:
    """Repository backed by the ITV tables in Snowflake.

    Every statement is parameterized. Callers own the connection and its
    lifetime (see SnowflakeConnectionManager).
    """

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._connection = connection

    def _run(
        self,
        sql: str,
        params: Sequence[Any] = (),
        *,
        table: str,
        entity: str = "",
        fetch: bool = False,
    ) -> tuple[Any, ...] | None:
        """Execute one statement, optionally returning its first row."""
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql, params)
            row = cursor.fetchone() if fetch else None
        except snowflake.connector.errors.Error as exc:
            raise LoadError(
                f"{table} statement failed: {getattr(exc, 'msg', str(exc))}",
                table=table,
                entity=entity,
            ) from exc
        finally:
            cursor.close()
        return tuple(row) if row is not None else None

    def _next_value(self, sequence: str, table: str, entity: str) -> int:
        row = self._run(
            f"SELECT {sequence}.NEXTVAL", table=table, entity=entity, fetch=True
        )
        if row is None:
            raise LoadError(f"Sequence {sequence} returned no value", table=table)
        return int(row[0])

    def ensure_schema(self) -> None:
        """Create the ITV tables and sequences if they do not exist."""
        for statement in SCHEMA_DDL:
            self._run(statement, table="SCHEMA")
        logger.info("ITV schema ensured (%d statements)", len(SCHEMA_DDL))

    def province_exists(self, code: int) -> bool:
        row = self._run(
            f"SELECT COUNT(*) FROM {PROVINCE_TABLE} WHERE CODIGO = %s",
            (code,),
            table=PROVINCE_TABLE,
            fetch=True,
        )
        return row is not None and int(row[0]) > 0

    def save_province(self, province: Province) -> None:
        self._run(
            f"INSERT INTO {PROVINCE_TABLE} (CODIGO, NOMBRE) VALUES (%s, %s)",
            (province.code, province.name),
            table=PROVINCE_TABLE,
            entity=province.name,
        )

    def find_locality(self, name: str, province_code: int) -> int | None:
        row = self._run(
            f"SELECT CODIGO FROM {LOCALITY_TABLE} "
            "WHERE NOMBRE = %s AND COD_PROVINCIA = %s",
            (name, province_code),
            table=LOCALITY_TABLE,
            entity=name,
            fetch=True,
        )
        return int(row[0]) if row is not None else None

    def save_locality(self, locality: Locality) -> int:
        code = self._next_value(_LOCALITY_SEQUENCE, LOCALITY_TABLE, locality.name)
        self._run(
            f"INSERT INTO {LOCALITY_TABLE} (CODIGO, NOMBRE, COD_PROVINCIA) "
            "VALUES (%s, %s, %s)",
            (code, locality.name, locality.province_code),
            table=LOCALITY_TABLE,
            entity=locality.name,
        )
        return code

    def save_station(self, station: Station) -> int:
        code = self._next_value(_STATION_SEQUENCE, STATION_TABLE, station.name)
        self._run(
            f"INSERT INTO {STATION_TABLE} (COD_ESTACION, NOMBRE, TIPO, "
            "DIRECCION, CODIGO_POSTAL, LONGITUD, LATITUD, DESCRIPCION, "
            "HORARIO, CONTACTO, URL, COD_LOCALIDAD) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                code,
                station.name,
                station.type.value,
                station.address,
                station.postal_code,
                station.longitude,
                station.latitude,
                station.description,
                station.schedule,
                station.contact,
                station.url,
                station.locality_code,
            ),
            table=STATION_TABLE,
            entity=station.name,
        )
        return code
