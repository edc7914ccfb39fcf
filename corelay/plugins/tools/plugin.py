"""Tools plugin - built-in capabilities implemented by the host.

Priority: 30 (after config, sandbox)
Capability: builtin_tools

The capabilities component registers everything returned by
get_capabilities() when it starts.
"""

import sys
from datetime import date as date_type
from typing import Any, Optional

import httpx

from ..base import Plugin, PluginMeta
from ..interfaces import Capability, ExecutionError

GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"

# WMO weather interpretation codes used by Open-Meteo
WEATHER_CODES = {
    0: "clear sky",
    1: "mainly clear",
    2: "partly cloudy",
    3: "overcast",
    45: "fog",
    48: "depositing rime fog",
    51: "light drizzle",
    53: "moderate drizzle",
    55: "dense drizzle",
    61: "slight rain",
    63: "moderate rain",
    65: "heavy rain",
    71: "slight snow",
    73: "moderate snow",
    75: "heavy snow",
    80: "rain showers",
    81: "heavy rain showers",
    82: "violent rain showers",
    95: "thunderstorm",
    96: "thunderstorm with hail",
    99: "thunderstorm with heavy hail",
}


class WeatherCapability(Capability):
    """Daily forecast for a place, via Open-Meteo (no API key needed)."""

    name = "weather"
    description = "Get the weather forecast for a location on a specific date"
    parameters = {
        "type": "object",
        "properties": {
            "location": {
                "type": "string",
                "description": "City or place name, e.g. 'Berlin'",
            },
            "date": {
                "type": "string",
                "description": "Date in YYYY-MM-DD format (default: today)",
            },
        },
        "required": ["location"],
    }
    aliases = ("get_weather_on_date",)

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._timeout = timeout
        self._transport = transport

    def get_declarations(self) -> list[dict]:
        return [
            {
                "name": "get_weather_on_date",
                "description": self.description,
                "parameters": self.parameters,
            }
        ]

    async def execute(self, args: dict) -> Any:
        location = (args.get("location") or "").strip()
        if not location:
            raise ExecutionError("location is required")

        day = args.get("date") or date_type.today().isoformat()
        try:
            date_type.fromisoformat(day)
        except ValueError:
            raise ExecutionError(f"Invalid date '{day}', expected YYYY-MM-DD")

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                place = await self._geocode(client, location)
                daily = await self._forecast(client, place, day)
        except httpx.HTTPStatusError as e:
            raise ExecutionError(
                f"Weather service error: {e.response.status_code}"
            )
        except httpx.RequestError as e:
            raise ExecutionError(f"Weather request failed: {e}")

        code = _first(daily.get("weather_code"))
        return {
            "location": place["name"],
            "country": place.get("country", ""),
            "date": day,
            "condition": WEATHER_CODES.get(code, "unknown"),
            "temperature_max": _first(daily.get("temperature_2m_max")),
            "temperature_min": _first(daily.get("temperature_2m_min")),
            "precipitation_mm": _first(daily.get("precipitation_sum")),
        }

    async def _geocode(self, client: httpx.AsyncClient, location: str) -> dict:
        response = await client.get(
            GEOCODING_URL, params={"name": location, "count": 1, "format": "json"}
        )
        response.raise_for_status()
        results = response.json().get("results") or []
        if not results:
            raise ExecutionError(f"Unknown location: {location}")
        return results[0]

    async def _forecast(self, client: httpx.AsyncClient, place: dict, day: str) -> dict:
        response = await client.get(
            FORECAST_URL,
            params={
                "latitude": place["latitude"],
                "longitude": place["longitude"],
                "daily": "weather_code,temperature_2m_max,temperature_2m_min,precipitation_sum",
                "timezone": "auto",
                "start_date": day,
                "end_date": day,
            },
        )
        response.raise_for_status()
        daily = response.json().get("daily")
        if not daily:
            raise ExecutionError(f"No forecast available for {day}")
        return daily


class GoogleSearchCapability(Capability):
    """Native grounding tool. The model endpoint runs the search itself."""

    name = "googleSearch"
    description = "Google Search grounding"

    def get_declarations(self) -> list[dict]:
        return []

    def declaration_group(self) -> dict:
        return {"googleSearch": {}}

    async def execute(self, args: dict) -> Any:
        raise ExecutionError("googleSearch is executed by the model endpoint")


def _first(values):
    if isinstance(values, list) and values:
        return values[0]
    return None


BUILTIN_TOOLS = {
    "google_search": GoogleSearchCapability,
    "weather": WeatherCapability,
}


class ToolsPlugin(Plugin):
    """Provides the host's built-in capabilities."""

    meta = PluginMeta(
        id="tools",
        version="1.0.0",
        capabilities=["builtin_tools"],
        dependencies=["config"],
        priority=30,
    )

    def __init__(self):
        self._enabled: list[str] = list(BUILTIN_TOOLS)
        self._timeout: float = 10.0
        self._capabilities: list[Capability] = [self._build(n) for n in self._enabled]

    def configure(self, config: dict) -> None:
        """Receive tools configuration."""
        tools_config = config.get("tools", {}) or {}
        enabled = tools_config.get("enabled", list(BUILTIN_TOOLS))
        unknown = [name for name in enabled if name not in BUILTIN_TOOLS]
        if unknown:
            raise ValueError(f"Unknown built-in tools: {', '.join(unknown)}")
        self._enabled = list(enabled)
        self._timeout = float(tools_config.get("timeout", 10.0))
        self._capabilities = [self._build(name) for name in self._enabled]

    def _build(self, name: str) -> Capability:
        if name == "weather":
            return WeatherCapability(timeout=self._timeout)
        return BUILTIN_TOOLS[name]()

    async def start(self) -> None:
        """Tools plugin is ready."""
        names = ", ".join(c.name for c in self._capabilities) or "none"
        print(f"[Tools] Built-ins: {names}", file=sys.stderr)

    async def stop(self) -> None:
        """Nothing to clean up."""
        pass

    def get_capabilities(self) -> list[Capability]:
        """Built-in capabilities in registration order."""
        return list(self._capabilities)


# Factory function for plugin discovery
def create_plugin() -> ToolsPlugin:
    return ToolsPlugin()
