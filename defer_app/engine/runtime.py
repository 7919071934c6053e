# defer_app/engine/runtime.py
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from defer_app.engine.classifier import TemplateClassifier
from defer_app.engine.controller import ScriptInterceptionController
from defer_app.engine.dom import Window
from defer_app.engine.matcher import is_module_script, rule_applies
from defer_app.engine.models import DeferConfig
from defer_app.engine.scheduler import DEFAULT_GRACE_MS, DEFAULT_STAGGER_MS, ReleaseScheduler

logger = logging.getLogger(__name__)

BYPASS_PARAM = "rl_nodefer"


@dataclass
class DeferRuntime:
    controller: ScriptInterceptionController
    scheduler: ReleaseScheduler

    def debug(self) -> dict:
        snapshot = self.controller.debug_snapshot()
        snapshot["released"] = list(self.scheduler.released)
        snapshot["release_reason"] = self.scheduler.release_reason
        return snapshot


def is_bypassed(window: Window) -> bool:
    values = window.location.query_params().get(BYPASS_PARAM)
    if values is None:
        return False
    # first occurrence wins, as URLSearchParams.get() reads it in the loader
    return values[0].strip().lower() not in ("0", "false")


def install(
    window: Window,
    config: Optional[DeferConfig],
    stagger_ms: int = DEFAULT_STAGGER_MS,
    grace_ms: int = DEFAULT_GRACE_MS,
    module_predicate: Callable[[str], bool] = is_module_script,
) -> Optional[DeferRuntime]:
    """
    Boot the defer engine on a page. Runs where the loader sits in <head>, so scripts
    already parsed are scanned now and later ones are caught by the observer.

    Returns None, having touched nothing, when there is no config, the master switch
    is off, or the bypass flag is on the URL.
    """
    if is_bypassed(window):
        logger.info(f"[defer] bypassed via ?{BYPASS_PARAM}")
        return None
    if config is None or not config.enabled:
        return None

    controller = None
    try:
        controller = ScriptInterceptionController(window, config, TemplateClassifier(window.location))
        scheduler = ReleaseScheduler(
            window,
            controller,
            config.release_after_ms,
            stagger_ms=stagger_ms,
            grace_ms=grace_ms,
            module_predicate=module_predicate,
        )
        controller.scan_existing()
        controller.attach()
        scheduler.arm()
    except Exception as e:
        logger.error(f"[defer] init failed, scripts load normally: {e}", exc_info=True)
        if controller is not None:
            controller.detach()
            # anything already neutralised goes straight back
            ReleaseScheduler(window, controller, 0, stagger_ms=0, module_predicate=module_predicate).release_all("error")
        return None

    tag = controller.classifier.tag
    applicable = [c for c in controller.rules if c.rule.enabled and rule_applies(c.rule, tag)]
    logger.info(
        f"[defer] init template={tag.value} rules={len(applicable)} "
        f"release_in={config.release_after_ms}ms"
    )
    return DeferRuntime(controller=controller, scheduler=scheduler)
