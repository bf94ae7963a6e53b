"""
System mode: default, validation, persistence and the live accessor.
Run: pytest tests/test_mode_controller.py -v
"""

import pytest

from dispatch.errors import InvalidMode
from dispatch.models import SystemMode
from dispatch.notifier import SYSTEM_MODE_UPDATE
from dispatch.store import MODE_KEY


class TestModeController:
    def test_default_is_hitl(self, engine):
        assert engine.modes.get_mode() == SystemMode.HITL

    def test_set_and_get(self, engine):
        assert engine.modes.set_mode("autopilot") == SystemMode.AUTOPILOT
        assert engine.modes.get_mode() == SystemMode.AUTOPILOT

    def test_invalid_mode_leaves_current(self, engine):
        engine.modes.set_mode("off")
        with pytest.raises(InvalidMode):
            engine.modes.set_mode("bogus")
        assert engine.modes.get_mode() == SystemMode.OFF

    def test_change_is_published(self, engine, notifier):
        engine.modes.set_mode("autopilot")
        assert notifier.of(SYSTEM_MODE_UPDATE) == [{"mode": "autopilot"}]

    def test_corrupt_stored_value_falls_back(self, engine, r):
        r.set(MODE_KEY, "turbo")
        assert engine.modes.get_mode() == SystemMode.HITL

    def test_accessor_is_live(self, engine):
        accessor = engine.modes.accessor()
        engine.modes.set_mode("off")
        assert accessor() == SystemMode.OFF

    @pytest.mark.parametrize(
        "mode,allowed",
        [(SystemMode.HITL, True), (SystemMode.AUTOPILOT, True), (SystemMode.OFF, False)],
    )
    def test_auto_assignment_gate(self, mode, allowed):
        assert mode.allows_auto_assignment is allowed
