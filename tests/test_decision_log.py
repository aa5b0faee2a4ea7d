from datetime import datetime, timezone

import pytest

from position_guard.decision_log import format_conclusion, log_decision_conclusion, stop_loss_conclusion

pytestmark = pytest.mark.unit


def test_format_conclusion_layout():
    block = format_conclusion(
        "hard stop",
        "BTC/USDT:USDT",
        "closing at market",
        {"risk_level": "static-low"},
        now=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )
    lines = block.splitlines()
    assert lines[0] == "=== 2024-05-01 12:00:00 UTC - hard stop - BTC/USDT:USDT ==="
    assert lines[1] == "info: {"
    assert '"risk_level": "static-low"' in block
    assert "conclusion:\nclosing at market\n" in block
    assert block.rstrip("\n").endswith("=" * 80)


def test_log_decision_conclusion_appends(tmp_path):
    path = tmp_path / "logs" / "decisions.txt"
    assert log_decision_conclusion("hard stop", "BTC/USDT:USDT", "first", path=str(path)) is True
    assert log_decision_conclusion("hard stop", "ETH/USDT:USDT", "second", path=str(path)) is True

    text = path.read_text(encoding="utf-8")
    assert text.count("=== ") == 2
    assert text.index("first") < text.index("second")


def test_log_decision_conclusion_reports_write_failure(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    assert log_decision_conclusion("hard stop", "BTC/USDT:USDT", "text", path=str(blocker / "decisions.txt")) is False


@pytest.mark.parametrize("is_dynamic, kind", [(True, "dynamic stop"), (False, "static stop")])
def test_stop_loss_conclusion(is_dynamic, kind):
    text = stop_loss_conclusion(
        symbol="BTC/USDT:USDT",
        side="long",
        leverage=10.0,
        entry_price=50000.0,
        current_price=49700.0,
        pnl_percent=-6.0,
        threshold=-6.0,
        risk_level="static-low",
        description="low leverage band",
        is_dynamic=is_dynamic,
    )
    assert text.startswith(f"[hard stop triggered - {kind}] BTC/USDT:USDT long")
    assert "leverage:       10x" in text
    assert "pnl:            -6.00%" in text
