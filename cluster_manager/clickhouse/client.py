"""
Async ClickHouse client over the engine's HTTP interface.

Statements are sent as POST bodies, inserts and result sets use the
JSONEachRow format, and query parameters are bound server side
({name:Type} placeholders) so values never end up in SQL text.
"""

import json
import logging
import re
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional

import httpx

from cluster_manager.errors import ClickHouseError, ConnectivityError

logger = logging.getLogger(__name__)

# Settings applied to every request unless overridden
DEFAULT_SETTINGS: Dict[str, Any] = {
    "max_execution_time": 30,
    "max_memory_usage": 8000000000,
    "optimize_move_to_prewhere": 1,
    "date_time_input_format": "best_effort",
    "date_time_output_format": "iso",
    "output_format_json_quote_64bit_integers": 0,
}

_ERROR_CODE_RE = re.compile(r"Code:\s*(\d+)")


def format_datetime(value: datetime) -> str:
    """Render a datetime as a DateTime64(3) literal in UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\t", "\\t").replace("\n", "\\n")


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _format_nested(value: Any) -> str:
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, datetime):
        return _quote(format_datetime(value))
    if isinstance(value, date):
        return _quote(value.isoformat())
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_format_nested(v) for v in value) + "]"
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def format_parameter(value: Any) -> str:
    """Render a Python value as a ClickHouse query parameter."""
    if isinstance(value, str):
        return _escape(value)
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return _format_nested(list(value))
    if isinstance(value, bool):
        return "1" if value else "0"
    if value is None:
        return "\\N"
    return str(value)


class ClickHouseClient:
    """
    Thin async wrapper around one ClickHouse HTTP endpoint.

    One instance holds one httpx connection pool; it is safe to share
    between concurrent callers.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str = "default",
        password: str = "",
        database: str = "default",
        secure: bool = False,
        connect_timeout: float = 5.0,
        query_timeout: float = 60.0,
        settings: Optional[Mapping[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize client.

        Args:
            host: Engine hostname
            port: HTTP(S) port
            username: Engine user
            password: Engine password
            database: Default database for statements
            secure: Use HTTPS
            connect_timeout: Seconds allowed to open a connection
            query_timeout: Seconds allowed for a full request
            settings: Engine settings overriding DEFAULT_SETTINGS
            transport: Optional httpx transport (tests)
        """
        self.host = host
        self.port = port
        self.username = username
        self.database = database
        self.secure = secure
        self.settings: Dict[str, Any] = dict(DEFAULT_SETTINGS)
        if settings:
            self.settings.update(settings)

        scheme = "https" if secure else "http"
        self._http = httpx.AsyncClient(
            base_url=f"{scheme}://{host}:{port}",
            headers={
                "X-ClickHouse-User": username,
                "X-ClickHouse-Key": password,
            },
            timeout=httpx.Timeout(query_timeout, connect=connect_timeout),
            transport=transport,
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _params(
        self,
        parameters: Optional[Mapping[str, Any]] = None,
        query: Optional[str] = None,
    ) -> Dict[str, str]:
        params: Dict[str, str] = {"database": self.database}
        for key, value in self.settings.items():
            params[key] = str(value)
        if query is not None:
            params["query"] = query
        for name, value in (parameters or {}).items():
            params[f"param_{name}"] = format_parameter(value)
        return params

    def _raise_for_response(self, response: httpx.Response, body: str) -> None:
        if response.status_code == 200:
            return
        match = _ERROR_CODE_RE.search(body)
        code = int(match.group(1)) if match else None
        exception_code = response.headers.get("X-ClickHouse-Exception-Code")
        if code is None and exception_code and exception_code.isdigit():
            code = int(exception_code)
        raise ClickHouseError(body.strip()[:1000], code=code, status_code=response.status_code)

    async def _post(
        self,
        content: str,
        parameters: Optional[Mapping[str, Any]] = None,
        query: Optional[str] = None,
    ) -> str:
        try:
            response = await self._http.post(
                "/", params=self._params(parameters, query), content=content.encode("utf-8")
            )
        except (httpx.TransportError, httpx.TimeoutException) as e:
            raise ConnectivityError(f"ClickHouse request failed: {e}", self.host, self.port) from e
        self._raise_for_response(response, response.text)
        return response.text

    async def ping(self) -> bool:
        """
        Liveness probe against /ping.

        Raises:
            ConnectivityError: Endpoint unreachable or not answering Ok.
        """
        try:
            response = await self._http.get("/ping")
        except (httpx.TransportError, httpx.TimeoutException) as e:
            raise ConnectivityError(f"ClickHouse ping failed: {e}", self.host, self.port) from e
        if response.status_code != 200 or not response.text.startswith("Ok"):
            raise ConnectivityError(
                f"ClickHouse ping returned HTTP {response.status_code}", self.host, self.port
            )
        return True

    async def command(self, sql: str, parameters: Optional[Mapping[str, Any]] = None) -> str:
        """Execute a statement that returns no rows (DDL, ALTER, INSERT ... SELECT)."""
        return await self._post(sql, parameters)

    async def insert(self, table: str, rows: Iterable[Mapping[str, Any]]) -> int:
        """
        Insert rows as one JSONEachRow block.

        Returns:
            Number of rows sent
        """
        lines = [json.dumps(row, default=str, ensure_ascii=False) for row in rows]
        if not lines:
            return 0
        await self._post("\n".join(lines) + "\n", query=f"INSERT INTO {table} FORMAT JSONEachRow")
        return len(lines)

    async def iter_rows(
        self, sql: str, parameters: Optional[Mapping[str, Any]] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream result rows.

        The HTTP response is closed as soon as the consumer stops iterating
        or is cancelled; the pooled client itself stays usable.
        """
        statement = f"{sql.rstrip().rstrip(';')}\nFORMAT JSONEachRow"
        try:
            async with self._http.stream(
                "POST", "/", params=self._params(parameters), content=statement.encode("utf-8")
            ) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    self._raise_for_response(response, body)
                async for line in response.aiter_lines():
                    if line.strip():
                        yield json.loads(line)
        except (httpx.TransportError, httpx.TimeoutException) as e:
            raise ConnectivityError(f"ClickHouse query failed: {e}", self.host, self.port) from e

    async def query(
        self, sql: str, parameters: Optional[Mapping[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        """Run a SELECT and return all rows."""
        return [row async for row in self.iter_rows(sql, parameters)]

    async def close(self) -> None:
        """Close the underlying connection pool."""
        if self._closed:
            return
        self._closed = True
        await self._http.aclose()
        logger.debug(f"Closed ClickHouse client {self.host}:{self.port}")
