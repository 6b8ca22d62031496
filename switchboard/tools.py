import ast
import asyncio
import math
import operator
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from .cache import Cache
from .tool_executor import ToolRegistry, ToolSpec, ToolValidationError

SAFE_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.FloorDiv: operator.floordiv,
}
SAFE_UNARY_OPS = {ast.UAdd: lambda v: v, ast.USub: lambda v: -v}
SAFE_NAMES: Dict[str, Any] = {
    "pi": math.pi,
    "e": math.e,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    **{name: getattr(math, name) for name in ("sqrt", "log", "log10", "sin", "cos", "tan", "exp", "ceil", "floor")},
}
MAX_EXPONENT = 10000


def safe_eval_expr(expr: str) -> Any:
    """Evaluate an arithmetic expression (no attribute access, no assignment)."""
    try:
        tree = ast.parse(expr, mode="eval")
    except SyntaxError as exc:
        raise ToolValidationError(f"Invalid expression: {exc.msg}") from exc

    def _eval(node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return _eval(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return node.value
        if isinstance(node, ast.BinOp) and type(node.op) in SAFE_BIN_OPS:
            left, right = _eval(node.left), _eval(node.right)
            if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
                raise ToolValidationError("Invalid expression: exponent too large")
            return SAFE_BIN_OPS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp) and type(node.op) in SAFE_UNARY_OPS:
            return SAFE_UNARY_OPS[type(node.op)](_eval(node.operand))
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and not node.keywords:
            func = SAFE_NAMES.get(node.func.id)
            if not callable(func):
                raise ToolValidationError(f"Invalid expression: function '{node.func.id}' not allowed")
            return func(*[_eval(arg) for arg in node.args])
        if isinstance(node, ast.Name) and node.id in SAFE_NAMES:
            return SAFE_NAMES[node.id]
        raise ToolValidationError("Invalid expression: disallowed syntax")

    return _eval(tree)


async def run_cancellable(awaitable: Awaitable[Any], cancel: Optional[asyncio.Event]) -> Any:
    """Await `awaitable` unless `cancel` fires first, in which case the work is aborted."""
    task = asyncio.ensure_future(awaitable)
    if cancel is None:
        return await task
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task in done:
        return task.result()
    task.cancel()
    raise asyncio.CancelledError("tool call cancelled")


class WeatherClient:
    def __init__(
        self,
        api_key: Optional[str],
        cache: Cache,
        base_url: str = "https://api.openweathermap.org/data/2.5",
        units: str = "imperial",
        cache_ttl_s: float = 600.0,
    ):
        self.api_key = api_key
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.units = units
        self.cache_ttl_s = cache_ttl_s
        self.client = httpx.AsyncClient(timeout=15)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def current(self, lat: float, lon: float, cancel: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        if not self.enabled:
            raise RuntimeError("OPENWEATHER_API_KEY not configured")
        key = f"weather:{lat:.2f}:{lon:.2f}:{self.units}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        params = {"lat": lat, "lon": lon, "units": self.units, "appid": self.api_key}
        resp = await run_cancellable(self.client.get(f"{self.base_url}/weather", params=params), cancel)
        resp.raise_for_status()
        data = resp.json()
        weather = (data.get("weather") or [{}])[0]
        main = data.get("main") or {}
        result = {
            "temp": main.get("temp"),
            "feels_like": main.get("feels_like"),
            "temp_min": main.get("temp_min"),
            "temp_max": main.get("temp_max"),
            "humidity": main.get("humidity"),
            "wind_speed": (data.get("wind") or {}).get("speed"),
            "condition": weather.get("main") or "Unknown",
            "description": weather.get("description") or "Unknown",
            "city": data.get("name") or "",
        }
        self.cache.set(key, result, ttl=self.cache_ttl_s)
        return result

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class HomeAssistantClient:
    def __init__(self, base_url: Optional[str], token: Optional[str]):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.client = httpx.AsyncClient(timeout=10)

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.token)

    async def request(
        self,
        path: str,
        method: str = "GET",
        payload: Optional[Dict[str, Any]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> Any:
        if not self.enabled:
            raise RuntimeError("Home Assistant is not configured")
        headers = {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}
        url = f"{self.base_url}/api{path}"
        resp = await run_cancellable(self.client.request(method, url, json=payload, headers=headers), cancel)
        resp.raise_for_status()
        if not resp.content:
            return None
        return resp.json()

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def _require(args: Dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value in (None, ""):
        raise ToolValidationError(f"Invalid arguments: '{key}' is required")
    return value


def build_default_registry(
    weather: WeatherClient,
    home: HomeAssistantClient,
    default_timezone: str = "UTC",
    default_location: Optional[Dict[str, float]] = None,
    utility_agents: Optional[Iterable[str]] = None,
) -> ToolRegistry:
    """Register the built-in tools. Utility tools are shared unless `utility_agents` narrows them."""
    registry = ToolRegistry()
    utility = list(utility_agents) if utility_agents is not None else None

    async def get_current_datetime(args, *, cancel, caller_id):
        tz_name = str(args.get("timezone") or default_timezone)
        now = datetime.now(timezone.utc)
        if tz_name.upper() != "UTC":
            try:
                now = now.astimezone(ZoneInfo(tz_name))
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ToolValidationError(f"Invalid timezone: {tz_name}") from exc
        return {
            "success": True,
            "message": now.strftime("%A, %B %d, %Y %I:%M %p %Z"),
            "data": {"iso": now.isoformat(), "timezone": tz_name},
        }

    async def calculate(args, *, cancel, caller_id):
        expr = str(_require(args, "expression")).strip()
        value = safe_eval_expr(expr)
        return {"success": True, "message": f"{expr} = {value}", "data": {"expression": expr, "result": value}}

    async def get_weather(args, *, cancel, caller_id):
        lat = args.get("lat")
        lon = args.get("lon")
        if lat is None or lon is None:
            if not default_location:
                raise ToolValidationError("Invalid arguments: lat/lon required (no default location)")
            lat, lon = default_location["lat"], default_location["lon"]
        data = await weather.current(float(lat), float(lon), cancel=cancel)
        summary = f"{data['description']}, {data['temp']}° (feels like {data['feels_like']}°)"
        return {"success": True, "message": summary, "data": data}

    registry.register(
        ToolSpec(
            "get_current_datetime",
            "Get the current date and time, optionally for a specific IANA timezone.",
            {"type": "object", "properties": {"timezone": {"type": "string"}}},
            get_current_datetime,
        ),
        agents=utility,
    )
    registry.register(
        ToolSpec(
            "calculate",
            "Evaluate an arithmetic expression.",
            {
                "type": "object",
                "properties": {"expression": {"type": "string"}},
                "required": ["expression"],
            },
            calculate,
        ),
        agents=utility,
    )
    registry.register(
        ToolSpec(
            "get_weather",
            "Get current weather for a latitude/longitude (defaults to the user's location).",
            {"type": "object", "properties": {"lat": {"type": "number"}, "lon": {"type": "number"}}},
            get_weather,
        ),
        agents=utility,
    )

    async def control_device(args, *, cancel, caller_id):
        entity_id = str(_require(args, "entity_id"))
        action = str(args.get("action") or "toggle")
        if action not in ("turn_on", "turn_off", "toggle"):
            raise ToolValidationError(f"Invalid action: {action}")
        domain = entity_id.split(".")[0]
        service_data: Dict[str, Any] = {"entity_id": entity_id}
        if action == "turn_on" and domain == "light":
            if args.get("brightness_pct") is not None:
                service_data["brightness_pct"] = args["brightness_pct"]
            if args.get("color_name"):
                service_data["color_name"] = args["color_name"]
        await home.request(f"/services/{domain}/{action}", "POST", service_data, cancel=cancel)
        return {"success": True, "message": f"Successfully executed {action} on {entity_id}"}

    async def set_climate(args, *, cancel, caller_id):
        entity_id = str(_require(args, "entity_id"))
        temperature = _require(args, "temperature")
        hvac_mode = args.get("hvac_mode")
        if hvac_mode:
            await home.request(
                "/services/climate/set_hvac_mode",
                "POST",
                {"entity_id": entity_id, "hvac_mode": hvac_mode},
                cancel=cancel,
            )
        await home.request(
            "/services/climate/set_temperature",
            "POST",
            {"entity_id": entity_id, "temperature": temperature},
            cancel=cancel,
        )
        suffix = f" in {hvac_mode} mode" if hvac_mode else ""
        return {"success": True, "message": f"Set {entity_id} to {temperature}°{suffix}"}

    async def activate_scene(args, *, cancel, caller_id):
        entity_id = str(_require(args, "entity_id"))
        await home.request("/services/scene/turn_on", "POST", {"entity_id": entity_id}, cancel=cancel)
        return {"success": True, "message": f"Activated scene {entity_id}"}

    async def get_device_state(args, *, cancel, caller_id):
        entity_id = str(_require(args, "entity_id"))
        state = await home.request(f"/states/{entity_id}", cancel=cancel) or {}
        return {
            "success": True,
            "message": f"{entity_id} is {state.get('state', 'unknown')}",
            "data": {"state": state.get("state"), "attributes": state.get("attributes") or {}},
        }

    entity = {"entity_id": {"type": "string", "description": "Home Assistant entity id, e.g. light.living_room"}}
    registry.register(
        ToolSpec(
            "control_device",
            "Turn a light, switch or fan on/off or toggle it.",
            {
                "type": "object",
                "properties": {
                    **entity,
                    "action": {"type": "string", "enum": ["turn_on", "turn_off", "toggle"]},
                    "brightness_pct": {"type": "number"},
                    "color_name": {"type": "string"},
                },
                "required": ["entity_id", "action"],
            },
            control_device,
        ),
        agents=["home"],
    )
    registry.register(
        ToolSpec(
            "set_climate",
            "Set a thermostat target temperature and optional HVAC mode.",
            {
                "type": "object",
                "properties": {**entity, "temperature": {"type": "number"}, "hvac_mode": {"type": "string"}},
                "required": ["entity_id", "temperature"],
            },
            set_climate,
        ),
        agents=["home"],
    )
    registry.register(
        ToolSpec(
            "activate_scene",
            "Activate a Home Assistant scene.",
            {"type": "object", "properties": entity, "required": ["entity_id"]},
            activate_scene,
        ),
        agents=["home"],
    )
    registry.register(
        ToolSpec(
            "get_device_state",
            "Read the current state of a device.",
            {"type": "object", "properties": entity, "required": ["entity_id"]},
            get_device_state,
        ),
        agents=["home"],
    )
    return registry
