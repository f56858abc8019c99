from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Optional

from .adapters import PlatformAdapter
from .errors import SelectorQueryError
from .service_models import Position, Target

logger = logging.getLogger("replay")

Strategy = Literal["selector", "text", "point"]


@dataclass
class Resolution:
    element: Any
    strategy: Strategy
    detail: str


class SelectorResolver:
    """Find the live element a recorded target refers to: selectors, then text, then hit test."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    async def resolve(
        self,
        target: Optional[Target],
        adapter: PlatformAdapter,
        position: Optional[Position] = None,
    ) -> Optional[Resolution]:
        if target is not None:
            for sel in target.selectors:
                if not sel or not sel.strip():
                    continue
                try:
                    element = await adapter.query_selector(sel)
                except SelectorQueryError as exc:
                    self.log.debug("[replay/locate] selector failed: %s (%s)", sel, exc)
                    continue
                if element is not None:
                    return Resolution(element, "selector", sel)

            hint = (target.text_hint or "").strip()
            if hint:
                element = await adapter.query_text(hint)
                if element is not None:
                    return Resolution(element, "text", hint)

        if position is not None:
            element = await adapter.element_from_point(position.x, position.y)
            if element is not None:
                return Resolution(element, "point", f"{position.x:.0f},{position.y:.0f}")

        return None
