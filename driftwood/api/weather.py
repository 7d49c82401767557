"""Weather lookup via Open-Meteo: geocoding by place name, then forecast.

Every failure mode (non-2xx, transport error, empty geocode result) comes
back as a human-readable string so the model can relay it to the user.
Uses a dedicated httpx client (NOT the model backend's -- that one carries
API credentials).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from driftwood.config import Settings

logger = logging.getLogger(__name__)

_CURRENT_FIELDS = (
    "temperature_2m,apparent_temperature,relative_humidity_2m,is_day,precipitation,"
    "weather_code,cloud_cover,pressure_msl,wind_speed_10m,wind_direction_10m,wind_gusts_10m"
)

# WMO weather interpretation codes
_WEATHER_CODES: dict[int, str] = {
    0: "clear sky",
    1: "mainly clear",
    2: "partly cloudy",
    3: "overcast",
    45: "fog",
    48: "depositing rime fog",
    51: "light drizzle",
    53: "moderate drizzle",
    55: "dense drizzle",
    56: "light freezing drizzle",
    57: "dense freezing drizzle",
    61: "slight rain",
    63: "moderate rain",
    65: "heavy rain",
    66: "light freezing rain",
    67: "heavy freezing rain",
    71: "slight snow fall",
    73: "moderate snow fall",
    75: "heavy snow fall",
    77: "snow grains",
    80: "slight rain showers",
    81: "moderate rain showers",
    82: "violent rain showers",
    85: "slight snow showers",
    86: "heavy snow showers",
    95: "thunderstorm",
    96: "thunderstorm with slight hail",
    99: "thunderstorm with heavy hail",
}


class WeatherServiceError(RuntimeError):
    """Geocoding or forecast service failed or returned nothing usable."""


async def geocode(city: str, *, _settings: Settings, _http: httpx.AsyncClient) -> tuple[float, float, str]:
    """Resolve a place name to (latitude, longitude, display_name)."""
    try:
        response = await _http.get(
            f"{_settings.geocoding_base_url}/v1/search",
            params={"name": city, "count": 1, "language": "en", "format": "json"},
        )
    except httpx.HTTPError as e:
        raise WeatherServiceError(f"Unable to reach the geocoding service for {city}: {e}") from e

    if response.status_code != 200:
        raise WeatherServiceError(
            f"Unable to look up {city} (geocoding service returned HTTP {response.status_code})"
        )

    results = response.json().get("results") or []
    if not results:
        raise WeatherServiceError(f"Could not find a location named {city}")

    top = results[0]
    parts = [top.get("name", city), top.get("admin1"), top.get("country")]
    display = ", ".join(p for p in parts if p)
    return float(top["latitude"]), float(top["longitude"]), display


async def fetch_current_weather(
    latitude: float,
    longitude: float,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> dict[str, Any]:
    """Fetch current conditions for coordinates."""
    try:
        response = await _http.get(
            f"{_settings.weather_base_url}/v1/forecast",
            params={
                "latitude": latitude,
                "longitude": longitude,
                "current": _CURRENT_FIELDS,
            },
        )
    except httpx.HTTPError as e:
        raise WeatherServiceError(f"Unable to reach the weather service: {e}") from e

    if response.status_code != 200:
        raise WeatherServiceError(f"Weather service returned HTTP {response.status_code}")

    data = response.json()
    current = data.get("current")
    if not current:
        raise WeatherServiceError("Weather service returned no current conditions")
    return {"current": current, "units": data.get("current_units", {})}


def format_weather(place: str, report: dict[str, Any]) -> str:
    current = report["current"]
    units = report.get("units", {})

    def fmt(key: str, default_unit: str = "") -> str:
        value = current.get(key)
        if value is None:
            return "n/a"
        return f"{value}{units.get(key, default_unit)}"

    code = current.get("weather_code")
    conditions = _WEATHER_CODES.get(code, f"weather code {code}") if code is not None else "unknown"
    lines = [
        f"Current weather in {place}: {conditions}",
        f"Temperature: {fmt('temperature_2m', '°C')} (feels like {fmt('apparent_temperature', '°C')})",
        f"Humidity: {fmt('relative_humidity_2m', '%')}",
        f"Precipitation: {fmt('precipitation', 'mm')}",
        f"Cloud cover: {fmt('cloud_cover', '%')}",
        f"Pressure: {fmt('pressure_msl', 'hPa')}",
        f"Wind: {fmt('wind_speed_10m', 'km/h')} from {fmt('wind_direction_10m', '°')} "
        f"(gusts {fmt('wind_gusts_10m', 'km/h')})",
    ]
    if current.get("is_day") == 0:
        lines.append("It is currently night time there.")
    return "\n".join(lines)


async def get_weather(
    city: str,
    latitude: float | None = None,
    longitude: float | None = None,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> str:
    """Human-readable current weather for a city or explicit coordinates."""
    logger.info("Getting weather information for %s", city)
    try:
        if latitude is None or longitude is None:
            latitude, longitude, place = await geocode(city, _settings=_settings, _http=_http)
        else:
            place = city
        report = await fetch_current_weather(latitude, longitude, _settings=_settings, _http=_http)
    except WeatherServiceError as e:
        logger.warning("Weather lookup failed for %s: %s", city, e)
        return f"Unable to fetch weather information at {city}: {e}"
    except (ValueError, KeyError) as e:
        # Malformed JSON or missing fields in a 200 response
        logger.warning("Unexpected weather service payload for %s: %s", city, e)
        return f"Unable to fetch weather information at {city}: unexpected response from the weather service"
    return format_weather(place, report)
