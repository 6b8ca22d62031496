import asyncio
import json

import pytest
import respx
from httpx import Response

from switchboard.cache import TTLCache
from switchboard.tool_executor import ToolExecutor, ToolValidationError
from switchboard.tools import HomeAssistantClient, WeatherClient, build_default_registry, run_cancellable, safe_eval_expr
from tests.fakes import FakeHomeClient, FakeWeatherClient

WEATHER_PAYLOAD = {
    "name": "Austin",
    "main": {"temp": 71.2, "feels_like": 70.1, "temp_min": 65.0, "temp_max": 75.0, "humidity": 44},
    "weather": [{"main": "Clouds", "description": "scattered clouds"}],
    "wind": {"speed": 4.1},
}


def test_safe_eval_expr_arithmetic_and_rejections():
    assert safe_eval_expr("2 + 3 * 4") == 14
    assert safe_eval_expr("sqrt(16) + -1") == 3.0
    with pytest.raises(ToolValidationError):
        safe_eval_expr("__import__('os').system('true')")
    with pytest.raises(ToolValidationError):
        safe_eval_expr("2 ** 100000")
    with pytest.raises(ToolValidationError):
        safe_eval_expr("1 +")


@pytest.mark.asyncio
async def test_run_cancellable_aborts_when_signalled():
    cancel = asyncio.Event()

    async def forever():
        await asyncio.sleep(10)

    async def fire():
        await asyncio.sleep(0.01)
        cancel.set()

    asyncio.create_task(fire())
    with pytest.raises(asyncio.CancelledError):
        await run_cancellable(forever(), cancel)


@pytest.mark.asyncio
async def test_weather_client_parses_and_caches():
    client = WeatherClient("weather-key", TTLCache(), base_url="https://weather.test/data/2.5")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["params"] = dict(request.url.params)
                return Response(200, json=WEATHER_PAYLOAD)

            route = respx_mock.get("https://weather.test/data/2.5/weather").mock(side_effect=handler)
            first = await client.current(30.27, -97.74)
            second = await client.current(30.27, -97.74)
            assert route.call_count == 1
        assert first == second
        assert first["temp"] == 71.2
        assert first["description"] == "scattered clouds"
        assert first["city"] == "Austin"
        assert captured["params"]["appid"] == "weather-key"
        assert captured["params"]["units"] == "imperial"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_weather_client_requires_key():
    client = WeatherClient(None, TTLCache())
    try:
        assert not client.enabled
        with pytest.raises(RuntimeError):
            await client.current(0.0, 0.0)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_home_assistant_service_call_sends_token_and_payload():
    client = HomeAssistantClient("http://ha.test:8123/", "ha-token")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["auth"] = request.headers["Authorization"]
                return Response(200, json=[])

            respx_mock.post("http://ha.test:8123/api/services/light/turn_off").mock(side_effect=handler)
            resp = await client.request("/services/light/turn_off", "POST", {"entity_id": "light.kitchen"})
        assert resp == []
        assert captured["json"] == {"entity_id": "light.kitchen"}
        assert captured["auth"] == "Bearer ha-token"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_home_assistant_http_error_surfaces_as_tool_failure():
    client = HomeAssistantClient("http://ha.test:8123", "ha-token")
    registry = build_default_registry(FakeWeatherClient(), client)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("http://ha.test:8123/api/states/light.missing").mock(return_value=Response(404))
            result = await ToolExecutor(registry).execute(
                "home", "get_device_state", {"entity_id": "light.missing"}, "user-1"
            )
        assert not result.success
        assert result.error["code"] == "NOT_FOUND"
        assert result.error["recoverable"] is False
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_default_registry_tools():
    home = FakeHomeClient()
    weather = FakeWeatherClient()
    registry = build_default_registry(weather, home, default_location={"lat": 1.5, "lon": 2.5})
    executor = ToolExecutor(registry)

    result = await executor.execute("personality", "calculate", {"expression": "6 * 7"}, "u")
    assert result.success and result.data["result"] == 42

    result = await executor.execute("researcher", "get_weather", {}, "u")
    assert result.success
    assert weather.calls == [{"lat": 1.5, "lon": 2.5}]

    result = await executor.execute("personality", "get_current_datetime", {"timezone": "Not/AZone"}, "u")
    assert not result.success and result.error["code"] == "VALIDATION_ERROR"

    result = await executor.execute(
        "home", "set_climate", {"entity_id": "climate.main", "temperature": 70, "hvac_mode": "heat"}, "u"
    )
    assert result.success
    assert [c["path"] for c in home.calls] == ["/services/climate/set_hvac_mode", "/services/climate/set_temperature"]

    result = await executor.execute("coder", "control_device", {"entity_id": "light.desk", "action": "turn_on"}, "u")
    assert not result.success and result.error["code"] == "VALIDATION_ERROR"


def test_utility_tools_can_be_limited_to_specialists():
    shared = build_default_registry(FakeWeatherClient(), FakeHomeClient())
    assert {spec.name for spec in shared.tools_for("personality")} == {"get_current_datetime", "calculate", "get_weather"}

    limited = build_default_registry(FakeWeatherClient(), FakeHomeClient(), utility_agents=["coder", "home"])
    assert limited.openai_tools("personality") == []
    assert "calculate" in {spec.name for spec in limited.tools_for("coder")}
    home_tools = {spec.name for spec in limited.tools_for("home")}
    assert {"calculate", "control_device", "set_climate"} <= home_tools
