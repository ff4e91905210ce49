"""MCP server tool tests -- calls @mcp.tool() functions directly."""

import json
from unittest.mock import MagicMock, patch

import pytest

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import korad_mcp
from korad import Identity, KoradPSU


@pytest.fixture(autouse=True)
def reset_psu():
    """Reset global _psu before each test."""
    korad_mcp._psu = None
    yield
    korad_mcp._psu = None


def _call(tool, *args, **kwargs):
    """Invoke a tool whether the decorator returned the function or a wrapper."""
    return getattr(tool, "fn", tool)(*args, **kwargs)


def _make_mock_psu():
    """Create a mock KoradPSU with an identity."""
    psu = MagicMock(spec=KoradPSU)
    psu.identity = Identity(
        "KORAD", "KD3005P", "V6.6", "SN:01206303",
        "KORAD KD3005P V6.6 SN:01206303",
    )
    return psu


# ---------------------------------------------------------------------------
# connect / disconnect
# ---------------------------------------------------------------------------

class TestConnect:

    @patch("korad_mcp.KoradPSU")
    def test_connect(self, MockKoradPSU):
        instance = _make_mock_psu()
        MockKoradPSU.return_value = instance

        result = json.loads(_call(korad_mcp.connect, "/dev/fake"))
        assert result["status"] == "connected"
        assert result["model"] == "KD3005P"
        assert result["firmware"] == "V6.6"
        MockKoradPSU.assert_called_once_with("/dev/fake", force=False)
        instance.connect.assert_called_once()

    @patch("korad_mcp.KoradPSU")
    def test_connect_forced(self, MockKoradPSU):
        MockKoradPSU.return_value = _make_mock_psu()
        _call(korad_mcp.connect, "/dev/fake", force=True)
        MockKoradPSU.assert_called_once_with("/dev/fake", force=True)

    @patch("korad_mcp.KoradPSU")
    def test_double_connect(self, MockKoradPSU):
        instance = _make_mock_psu()
        MockKoradPSU.return_value = instance

        _call(korad_mcp.connect, "/dev/fake")
        result = json.loads(_call(korad_mcp.connect, "/dev/fake"))
        assert "error" in result

    @patch("korad_mcp.KoradPSU")
    def test_connect_failure_keeps_disconnected(self, MockKoradPSU):
        instance = _make_mock_psu()
        instance.connect.side_effect = RuntimeError("boom")
        MockKoradPSU.return_value = instance

        with pytest.raises(RuntimeError):
            _call(korad_mcp.connect, "/dev/fake")
        assert korad_mcp._psu is None


class TestDisconnect:

    def test_disconnect_not_connected(self):
        result = json.loads(_call(korad_mcp.disconnect))
        assert result["status"] == "already disconnected"

    @patch("korad_mcp.KoradPSU")
    def test_disconnect_connected(self, MockKoradPSU):
        instance = _make_mock_psu()
        MockKoradPSU.return_value = instance
        _call(korad_mcp.connect, "/dev/fake")

        result = json.loads(_call(korad_mcp.disconnect))
        assert result["status"] == "disconnected"
        instance.close.assert_called_once()
        instance.output_off.assert_not_called()


# ---------------------------------------------------------------------------
# identify / read_status
# ---------------------------------------------------------------------------

class TestQueries:

    def test_identify(self):
        korad_mcp._psu = _make_mock_psu()
        result = json.loads(_call(korad_mcp.identify))
        assert result["serial"] == "SN:01206303"
        assert result["raw"] == "KORAD KD3005P V6.6 SN:01206303"

    def test_read_status(self):
        psu = _make_mock_psu()
        psu.read_report.return_value = {
            "status": 0x61,
            "cv_mode": True,
            "mode": "CV",
            "ocp_on": True,
            "output_on": True,
            "voltage_setpoint": "05.00",
            "current_setpoint": "1.000",
            "output_voltage": "04.99",
            "output_current": "0.120",
        }
        korad_mcp._psu = psu

        result = json.loads(_call(korad_mcp.read_status))
        assert result["status"] == 0x61
        assert result["mode"] == "CV"
        assert result["ocp_on"] is True
        assert result["voltage_setpoint"] == 5.0
        assert result["output_current"] == pytest.approx(0.12)


# ---------------------------------------------------------------------------
# Setters
# ---------------------------------------------------------------------------

class TestSetters:

    def _setup_psu(self):
        psu = _make_mock_psu()
        korad_mcp._psu = psu
        return psu

    def test_set_voltage(self):
        psu = self._setup_psu()
        result = json.loads(_call(korad_mcp.set_voltage, 5.0))
        assert result["status"] == "ok"
        psu.set_voltage.assert_called_once_with("5.00")

    def test_set_voltage_out_of_range(self):
        psu = self._setup_psu()
        with pytest.raises(ValueError):
            _call(korad_mcp.set_voltage, 31.0)
        psu.set_voltage.assert_not_called()

    def test_set_current(self):
        psu = self._setup_psu()
        result = json.loads(_call(korad_mcp.set_current, 1.0))
        assert result["status"] == "ok"
        psu.set_current.assert_called_once_with("1.000")

    def test_output_on(self):
        psu = self._setup_psu()
        result = json.loads(_call(korad_mcp.output_on))
        assert result["output"] == "on"
        psu.output_on.assert_called_once()

    def test_output_off(self):
        psu = self._setup_psu()
        result = json.loads(_call(korad_mcp.output_off))
        assert result["output"] == "off"
        psu.output_off.assert_called_once()

    def test_set_ocp(self):
        psu = self._setup_psu()
        result = json.loads(_call(korad_mcp.set_ocp, True))
        assert result["ocp"] == "on"
        psu.set_ocp.assert_called_once_with(True)

    def test_save_recall(self):
        psu = self._setup_psu()
        _call(korad_mcp.save, 1)
        _call(korad_mcp.recall, 5)
        psu.save.assert_called_once_with(1)
        psu.recall.assert_called_once_with(5)

    def test_bad_slot(self):
        psu = self._setup_psu()
        with pytest.raises(ValueError):
            _call(korad_mcp.recall, 9)
        psu.recall.assert_not_called()


# ---------------------------------------------------------------------------
# Without connection -- raises RuntimeError
# ---------------------------------------------------------------------------

class TestWithoutConnection:

    @pytest.mark.parametrize("tool,args", [
        (korad_mcp.identify, ()),
        (korad_mcp.read_status, ()),
        (korad_mcp.set_voltage, (5.0,)),
        (korad_mcp.set_current, (1.0,)),
        (korad_mcp.output_on, ()),
        (korad_mcp.output_off, ()),
        (korad_mcp.set_ocp, (False,)),
        (korad_mcp.save, (1,)),
        (korad_mcp.recall, (1,)),
    ])
    def test_no_connection(self, tool, args):
        with pytest.raises(RuntimeError, match="Not connected"):
            _call(tool, *args)
