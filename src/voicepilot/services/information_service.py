"""Weather and time lookups for the assistant's information functions."""

from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from voicepilot.utils.exceptions import InformationServiceError
from voicepilot.utils import logger

logger = logger.get_logger("InformationService")


class InformationService(Protocol):
    def get_weather(self, city: str) -> str: ...
    def get_current_time(self) -> str: ...


def format_weather_message(weather: Dict[str, Any]) -> str:
    """Render an OpenWeatherMap current-weather payload as one spoken sentence."""
    main = weather["main"]
    conditions = weather.get("weather") or []
    description = conditions[0].get("description", "Unknown") if conditions else "Unknown"
    wind = weather.get("wind") or {}

    return (
        f"The weather in {weather['name']}, {weather['sys']['country']} is {description} "
        f"with a temperature of {int(main['temp'])} degrees Celsius. "
        f"Humidity is {main['humidity']} percent and wind speed is "
        f"{int(wind.get('speed', 0))} meters per second."
    )


def format_time_message(now: datetime) -> str:
    local = now.astimezone()
    formatted = local.strftime("%H:%M:%S on %A, %B %d, %Y")
    return f"The current time is {formatted}. Your timezone is {local.tzname()}."


class WeatherTimeService:
    """OpenWeatherMap for weather, the local clock for time."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openweathermap.org/data/2.5/weather",
        timeout: int = 10,
        session: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._clock = clock

    def get_weather(self, city: str) -> str:
        if not self._api_key:
            raise InformationServiceError("OPENWEATHER_API_KEY is not configured")

        params = {"q": city, "appid": self._api_key, "units": "metric"}
        try:
            response = self._session.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.Timeout as exc:
            raise InformationServiceError("Weather request timed out") from exc
        except requests.RequestException as exc:
            raise InformationServiceError(f"Failed to get weather: {exc}") from exc
        except ValueError as exc:
            raise InformationServiceError("Weather response is not JSON") from exc

        try:
            return format_weather_message(payload)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise InformationServiceError(f"Weather data not available: {exc}") from exc

    def get_current_time(self) -> str:
        try:
            return format_time_message(self._clock())
        except Exception as exc:
            logger.error(f"Error getting local time: {exc}")
            raise InformationServiceError(f"Failed to read the clock: {exc}") from exc
