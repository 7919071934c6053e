# defer_app/services/loader_script.py
import json
from pathlib import Path

from fastapi.templating import Jinja2Templates

from defer_app.core.config import DEFER_GRACE_MS, DEFER_STAGGER_MS
from defer_app.engine.dom import EXECUTABLE_SCRIPT_TYPES
from defer_app.engine.matcher import MODULE_URL_MARKERS
from defer_app.engine.models import DeferConfig
from defer_app.engine.runtime import BYPASS_PARAM

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parents[1] / "templates"))

DISABLED_LOADER = "(function(){})();\n"


def _inline_json(data) -> str:
    # keep the payload from closing a surrounding <script> tag
    return json.dumps(data, separators=(",", ":")).replace("</", "<\\/")


def render_loader(config: DeferConfig, stagger_ms: int = DEFER_STAGGER_MS, grace_ms: int = DEFER_GRACE_MS) -> str:
    """
    Build the storefront bootstrap with the shop's rule set inlined.

    A disabled config yields an inert loader: no observer, no timers.
    """
    if not config.enabled:
        return DISABLED_LOADER
    return templates.get_template("loader.js.j2").render(
        config_json=_inline_json(config.to_wire()),
        bypass_param=BYPASS_PARAM,
        stagger_ms=int(stagger_ms),
        grace_ms=int(grace_ms),
        module_markers_json=_inline_json(list(MODULE_URL_MARKERS)),
        script_types_json=_inline_json(sorted(EXECUTABLE_SCRIPT_TYPES)),
    )
