"""Limitless TCG MCP Server - Model Context Protocol server for the Limitless TCG tournament API."""

from __future__ import annotations

import json
import logging
import os
import sys
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Union

import httpx
from dotenv import load_dotenv
from mcp.server import FastMCP
from mcp.types import CallToolResult, TextContent
from pydantic import BaseModel, ConfigDict, Field
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

# ---------------------------------------------------------------------------
# Configuration & Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=os.getenv("LIMITLESS_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("limitless-mcp")

API_KEY_ENV = "LIMITLESS_API_KEY"
API_KEY_ARG = "api-key="
BASE_URL = "https://play.limitlesstcg.com/api"
VERSION = "1.0.0"

ACCESS_KEY_HEADER = "X-Access-Key"
ACCESS_KEY_PARAM = "key"

# ---------------------------------------------------------------------------
# Custom Exceptions
# ---------------------------------------------------------------------------


class ConfigurationError(Exception):
    """Raised when the server cannot be configured (e.g. no API key)."""


class LimitlessAPIError(Exception):
    """Raised when the Limitless API answers with a non-success status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"API request failed: {status_code} {message}")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    """Process-wide configuration, resolved once at startup."""

    model_config = ConfigDict(frozen=True)

    api_key: str = Field(..., min_length=1)
    base_url: str = BASE_URL

    @classmethod
    def resolve(cls, environ: Mapping[str, str], argv: Sequence[str]) -> "Settings":
        """Build settings from the environment, falling back to an ``api-key=`` argument.

        The environment variable wins when both are present.
        """
        api_key = environ.get(API_KEY_ENV)
        if not api_key:
            for arg in argv:
                if arg.startswith(API_KEY_ARG):
                    api_key = arg[len(API_KEY_ARG):]
                    break
        if not api_key:
            raise ConfigurationError(
                f"No API key provided. Please set {API_KEY_ENV} environment variable "
                f"or provide {API_KEY_ARG}<API_KEY_HERE> argument."
            )
        return cls(api_key=api_key)


# ---------------------------------------------------------------------------
# HTTP Client with dual authentication
#
# Limitless API auth:
#   QUERY  → API key as the ``key`` query parameter
#   HEADER → API key in the ``X-Access-Key`` request header
# A failed QUERY attempt is retried once in HEADER mode.
# ---------------------------------------------------------------------------


class AuthMode(str, Enum):
    """How the access key is attached to an outbound request."""

    QUERY = "query"
    HEADER = "header"

    @property
    def fallback(self) -> Optional["AuthMode"]:
        """The mode to retry with after a failure, or None if terminal."""
        if self is AuthMode.QUERY:
            return AuthMode.HEADER
        return None


def auth_sequence(start: AuthMode) -> List[AuthMode]:
    """Return the modes a single request tries, in order, starting from *start*."""
    modes = [start]
    while modes[-1].fallback is not None:
        modes.append(modes[-1].fallback)
    return modes


def _normalize_endpoint(endpoint: str) -> str:
    if endpoint.startswith("/"):
        endpoint = endpoint[1:]
    if not endpoint:
        raise ValueError("endpoint must not be empty")
    return endpoint


def _query_params(params: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Drop unset values and stringify the rest."""
    if not params:
        return {}
    return {name: str(value) for name, value in params.items() if value is not None}


def _redact(url: httpx.URL) -> str:
    if ACCESS_KEY_PARAM not in url.params:
        return str(url)
    return str(url.copy_set_param(ACCESS_KEY_PARAM, "***"))


class LimitlessClient:
    """Authenticated GET client for the Limitless TCG API.

    Features:
    - Shared connection pool via httpx.AsyncClient
    - 30-second request timeout (10-second connect)
    - One automatic retry in header mode when query-mode auth fails
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._http: Optional[httpx.AsyncClient] = None

    def _get_http(self) -> httpx.AsyncClient:
        """Return the shared httpx.AsyncClient, creating one if needed."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self._http = None

    async def request(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        mode: AuthMode = AuthMode.QUERY,
    ) -> Any:
        """GET ``<base>/<endpoint>`` and return the decoded JSON body.

        Any HTTP or transport failure in query mode is retried once in
        header mode; failures in header mode propagate to the caller.
        """
        path = _normalize_endpoint(endpoint)
        query = _query_params(params)
        modes = auth_sequence(mode)

        def _log_fallback(retry_state: RetryCallState) -> None:
            failed = modes[retry_state.attempt_number - 1]
            logger.warning(
                "Request to %s failed with %s auth (%s); retrying with %s auth",
                path,
                failed.value,
                retry_state.outcome.exception() if retry_state.outcome else "unknown error",
                modes[retry_state.attempt_number].value,
            )

        result: Any = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type((LimitlessAPIError, httpx.HTTPError)),
            stop=stop_after_attempt(len(modes)),
            before_sleep=_log_fallback,
            reraise=True,
        ):
            with attempt:
                current = modes[attempt.retry_state.attempt_number - 1]
                result = await self._get(path, query, current)
        return result

    async def _get(self, path: str, query: Dict[str, str], mode: AuthMode) -> Any:
        params = dict(query)
        headers: Dict[str, str] = {}
        if mode is AuthMode.QUERY:
            params[ACCESS_KEY_PARAM] = self._settings.api_key
        else:
            headers[ACCESS_KEY_HEADER] = self._settings.api_key

        url = httpx.URL(f"{self._settings.base_url}/{path}", params=params)
        logger.info("API GET %s (%s auth)", _redact(url), mode.value)

        try:
            response = await self._get_http().get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Error fetching from Limitless API %s: %s", path, e)
            raise

        if not response.is_success:
            logger.error(
                "API request failed on %s: %s %s", path, response.status_code, response.reason_phrase
            )
            raise LimitlessAPIError(response.status_code, response.reason_phrase)

        return response.json()


# ---------------------------------------------------------------------------
# Pydantic Models for Input Validation
# ---------------------------------------------------------------------------

GAMES = ("DBS", "FW", "POCKET", "VGC", "LORCANA", "BSS", "OP", "SWU", "PGO", "GUNDAM", "DCG", "other", "PTCG")

Game = Literal["DBS", "FW", "POCKET", "VGC", "LORCANA", "BSS", "OP", "SWU", "PGO", "GUNDAM", "DCG", "other", "PTCG"]


class TournamentQuery(BaseModel):
    """Validated filters for the tournament listing."""
    game: Game = "VGC"
    format: Optional[str] = None
    organizerId: Optional[str] = None
    limit: Optional[Union[str, int]] = None
    page: Optional[Union[str, int]] = None

    def params(self) -> Dict[str, Any]:
        """Query parameters to send, leaving out empty filters."""
        return {name: value for name, value in self.model_dump().items() if value}


class TournamentId(BaseModel):
    """Validated tournament identifier."""
    id: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Tool descriptions
# ---------------------------------------------------------------------------

INSTRUCTIONS = """
  You are a helpful assistant that can answer questions about data from Limitless TCG.

  You can use the following tools to answer questions:
  - get_tournaments
  - get_tournament_details
  - get_tournament_standings
  - get_tournament_pairings

  For all of your queries, please default to using VGC as the game unless explicitly asked for information from other games. Also, be concise with your responses. PLEASE DO NOT ask the user more questions after you provide your answer. You are a Q&A assistant, not necessarily a chatbot unless the user's prompts require back-to-back discussion.
"""

GET_TOURNAMENTS_DESC = """
  Retrieve a list of tournaments with optional filtering by game, format, organizer, etc.

  It can accept the following parameters:
  - game (str, optional): The game to filter by.
  - format (str, optional): The format to filter by.
  - organizerId (str, optional): The organizer to filter by.
  - limit (str | int, optional): Number of tournaments to be returned.
  - page (str | int, optional): Used for pagination.

  Default to VGC as the game. Pass PTCG as the game if the user explicitly requests for TCG tournaments.

  Try to find tournaments whose names are exact or similar to the user's input, even if the match is not exact.

  If the user requests for a specific tournament, and you can't find it, please attempt to find the tournament on later pages without explicitly being asked by the user. Don't go past tournaments that happened more than a month ago unless explicitly asked by the user.

  If the user requests for upcoming tournaments, please let them know that you only have access to tournaments that have just completed. Then provide them with results immediately.
"""

GET_TOURNAMENT_DETAILS_DESC = "Retrieve detailed information about a specific tournament"

GET_TOURNAMENT_STANDINGS_DESC = """
  Retrieve standings for a specific tournament. If anyone asks about specific pokemon usage, you can find that info in the decklists.
  If anyone asks about "restricted"s, they're referring to any of the following pokemon:
  - Mewtwo
  - Lugia
  - Ho-Oh
  - Kyogre
  - Groudon
  - Rayquaza
  - Dialga
  - Dialga (Origin Forme)
  - Palkia
  - Palkia (Origin Forme)
  - Giratina (Altered Forme)
  - Giratina (Origin Forme)
  - Reshiram
  - Zekrom
  - Kyurem
  - Kyurem (White Kyurem)
  - Kyurem (Black Kyurem)
  - Cosmog
  - Cosmoem
  - Solgaleo
  - Lunala
  - Necrozma
  - Necrozma (Dusk Mane)
  - Necrozma (Dawn Wings)
  - Zacian
  - Zamazenta
  - Eternatus
  - Calyrex
  - Calyrex (Ice Rider)
  - Calyrex (Shadow Rider)
  - Koraidon
  - Miraidon
  - Terapagos

  Also consider the following:
  - "CSR", "Caly-Shadow" and all similar variations are common nicknames for Calyrex Shadow Rider
  - "CIR", "Caly-Ice" and all similar variations are common nicknames for Calyrex Ice Rider

  Try to find restricted pokemon whose names are exact or similar to the user's input, even if the match is not exact. Keep in mind it is guaranteed that not all of these Pokemon names map 1-to-1 with the pokemon names returned by the Limitless API.
"""

GET_TOURNAMENT_PAIRINGS_DESC = "Retrieve match pairings for a specific tournament"


# ---------------------------------------------------------------------------
# Helper: response envelopes
# ---------------------------------------------------------------------------

def _text_result(text: str) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)])


def _error_result(what: str, error: Exception) -> CallToolResult:
    return CallToolResult(
        isError=True,
        content=[TextContent(type="text", text=f"Error fetching {what}: {error}")],
    )


def _dump(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False)


def _tournaments_title(query: TournamentQuery) -> str:
    """Markdown heading describing the active listing filters."""
    filters = []
    if query.format:
        filters.append(f"format: {query.format}")
    if query.organizerId:
        filters.append(f"organizer: {query.organizerId}")
    if query.page:
        filters.append(f"page: {query.page}")
    title = f"## {query.game} tournaments"
    if filters:
        title += f" ({', '.join(filters)})"
    return title


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class TournamentTools:
    """The tool handlers exposed to the agent.

    Each handler returns a CallToolResult; failures become ``isError``
    results and never propagate to the MCP transport.
    """

    def __init__(self, client: LimitlessClient):
        self._client = client

    async def get_tournaments(
        self,
        game: Game = "VGC",
        format: Optional[str] = None,
        organizerId: Optional[str] = None,
        limit: Optional[Union[str, int]] = None,
        page: Optional[Union[str, int]] = None,
    ) -> CallToolResult:
        """List tournaments, optionally filtered by game, format and organizer."""
        try:
            query = TournamentQuery(
                game=game,
                format=format,
                organizerId=organizerId,
                limit=limit,
                page=page,
            )
            tournaments = await self._client.request("tournaments", query.params())
            return _text_result(f"{_tournaments_title(query)}\n\n{_dump(tournaments)}")
        except Exception as e:
            logger.exception("get_tournaments failed")
            return _error_result("tournaments", e)

    async def get_tournament_details(self, id: str) -> CallToolResult:
        """Detailed information about one tournament."""
        return await self._fetch(id, "details", "tournament details")

    async def get_tournament_standings(self, id: str) -> CallToolResult:
        """Final standings (with decklists) for one tournament."""
        return await self._fetch(id, "standings", "tournament standings")

    async def get_tournament_pairings(self, id: str) -> CallToolResult:
        """Match pairings for one tournament."""
        return await self._fetch(id, "pairings", "tournament pairings")

    async def _fetch(self, id: str, resource: str, what: str) -> CallToolResult:
        try:
            tournament = TournamentId(id=id)
            result = await self._client.request(f"tournaments/{tournament.id}/{resource}")
            return _text_result(_dump(result))
        except Exception as e:
            logger.exception("Fetching %s for tournament %s failed", resource, id)
            return _error_result(what, e)


def list_games() -> str:
    """Game codes accepted by the ``game`` filter of get_tournaments."""
    return _dump(list(GAMES))


# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------


def create_server(settings: Settings) -> FastMCP:
    """Build the MCP server with its tools bound to a client for *settings*."""
    tools = TournamentTools(LimitlessClient(settings))
    mcp = FastMCP("LimitlessTCG", instructions=INSTRUCTIONS)

    mcp.add_tool(
        tools.get_tournaments,
        name="get_tournaments",
        description=GET_TOURNAMENTS_DESC,
        structured_output=False,
    )
    mcp.add_tool(
        tools.get_tournament_details,
        name="get_tournament_details",
        description=GET_TOURNAMENT_DETAILS_DESC,
        structured_output=False,
    )
    mcp.add_tool(
        tools.get_tournament_standings,
        name="get_tournament_standings",
        description=GET_TOURNAMENT_STANDINGS_DESC,
        structured_output=False,
    )
    mcp.add_tool(
        tools.get_tournament_pairings,
        name="get_tournament_pairings",
        description=GET_TOURNAMENT_PAIRINGS_DESC,
        structured_output=False,
    )
    mcp.resource(
        "limitless://games",
        name="games",
        description="Game codes accepted by get_tournaments",
        mime_type="application/json",
    )(list_games)
    return mcp


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------

def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point for the limitless-mcp command."""
    load_dotenv()
    try:
        settings = Settings.resolve(os.environ, sys.argv[1:] if argv is None else argv)
    except ConfigurationError as e:
        logger.error("%s", e)
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    logger.info("Starting Limitless TCG MCP Server %s", VERSION)
    create_server(settings).run()


if __name__ == "__main__":
    main()
