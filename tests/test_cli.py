import json

import respx
from httpx import Response

import switchboard_cli


def _sse(*events) -> str:
    return "".join(f"data: {json.dumps(event)}\n\n" for event in events)


def test_chat_streams_content_to_stdout(capsys):
    captured = {}
    body = _sse(
        {"type": "thread_created", "threadId": "t1"},
        {"type": "routing", "decision": {"agent": "home", "source": "user-forced", "confidence": 1.0}},
        {"type": "tool_start", "tool": "control_device", "args": {"entity_id": "light.den"}, "id": "c1"},
        {"type": "tool_end", "tool": "control_device", "success": True, "id": "c1", "duration": 12},
        {"type": "content", "delta": "Lights "},
        {"type": "content", "delta": "off."},
        {"type": "done", "fullContent": "Lights off.", "agent": "home", "threadId": "t1"},
    )
    with respx.mock(assert_all_called=True) as respx_mock:
        def handler(request):
            captured["json"] = json.loads(request.content.decode("utf-8"))
            return Response(200, text=body, headers={"Content-Type": "text/event-stream"})

        respx_mock.post("http://sb.test/api/chat/stream").mock(side_effect=handler)
        code = switchboard_cli.main(["--base-url", "http://sb.test/", "chat", "lights", "off", "--agent", "home"])

    out, err = capsys.readouterr()
    assert code == 0
    assert out == "Lights off.\n"
    assert "[home via user-forced (1.00)]" in err
    assert "[tool control_device ok in 12ms]" in err
    assert captured["json"]["message"] == "lights off"
    assert captured["json"]["force_agent"] == "home"
    assert captured["json"]["show_tool_executions"] is True


def test_chat_error_event_sets_exit_code(capsys):
    body = _sse({"type": "error", "message": "⚠️ API key not configured for coder", "recoverable": False})
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post("http://sb.test/api/chat/stream").mock(return_value=Response(200, text=body))
        code = switchboard_cli.main(["--base-url", "http://sb.test", "chat", "hi", "--no-tools"])
    assert code == 1
    assert "API key not configured" in capsys.readouterr().err


def test_metrics_prints_summary(capsys):
    metrics = {
        "agent": "coder",
        "avg_quality": 0.8123,
        "response_count": 4,
        "positive_feedback": 2,
        "negative_feedback": 1,
        "regeneration_rate": 0.25,
        "avg_latency": 1450.4,
        "trend": "stable",
    }
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get("http://sb.test/api/agents/coder/metrics").mock(
            return_value=Response(200, json={"agent": "coder", "metrics": metrics})
        )
        code = switchboard_cli.main(["--base-url", "http://sb.test", "metrics", "coder"])
    out = capsys.readouterr().out
    assert code == 0
    assert "Avg quality: 0.81 (stable)" in out
    assert "Regeneration rate: 25%" in out


def test_health_http_error(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.get("http://sb.test/api/health").mock(return_value=Response(500))
        code = switchboard_cli.main(["--base-url", "http://sb.test", "health"])
    assert code == 1
    assert "HTTP 500" in capsys.readouterr().out
