"""Single point of truth for the global operating mode (hitl / autopilot / off)."""

import logging
from typing import Callable, Optional

from dispatch.errors import InvalidMode
from dispatch.models import SystemMode
from dispatch.notifier import SYSTEM_MODE_UPDATE, Notifier
from dispatch.store import ModeStore

logger = logging.getLogger(__name__)

DEFAULT_MODE = SystemMode.HITL

ModeAccessor = Callable[[], SystemMode]


def parse_mode(value) -> SystemMode:
    if isinstance(value, SystemMode):
        return value
    try:
        return SystemMode(str(value).strip().lower())
    except ValueError:
        raise InvalidMode(value) from None


class ModeController:
    def __init__(self, store: ModeStore, notifier: Optional[Notifier] = None):
        self.store = store
        self.notifier = notifier

    def get_mode(self) -> SystemMode:
        """Current mode; hitl until an admin sets something else."""
        raw = self.store.get()
        if raw is None:
            return DEFAULT_MODE
        try:
            return SystemMode(raw)
        except ValueError:
            logger.error("Stored system mode %r is invalid; using %s.", raw, DEFAULT_MODE.value)
            return DEFAULT_MODE

    def set_mode(self, mode) -> SystemMode:
        """Validate and persist the mode in one write; readers never see a partial value."""
        new_mode = parse_mode(mode)
        self.store.set(new_mode.value)
        logger.info("System mode set to %s.", new_mode.value)
        if self.notifier is not None:
            self.notifier.publish(SYSTEM_MODE_UPDATE, {"mode": new_mode.value})
        return new_mode

    def accessor(self) -> ModeAccessor:
        """Zero-argument callable handed to components that gate on the mode."""
        return self.get_mode
