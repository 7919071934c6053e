from defer_app.engine.controller import Disposition, ScriptInterceptionController
from defer_app.engine.dom import Window
from defer_app.engine.scheduler import ReleaseScheduler

from conftest import add_script, make_config

GTM = "https://www.googletagmanager.com/gtm.js"
PIXEL = "https://connect.facebook.net/en_US/fbevents.js"


def scheduler_for(release_after_ms=1000, stagger_ms=50, grace_ms=3000):
    window = Window("https://shop.myshopify.com/")
    config = make_config(
        {"id": "gtm", "src_regex": "googletagmanager"},
        {"id": "fb", "src_regex": "facebook", "action": "delay"},
        release_after_ms=release_after_ms,
    )
    controller = ScriptInterceptionController(window, config)
    controller.attach()
    return window, controller, ReleaseScheduler(window, controller, release_after_ms, stagger_ms, grace_ms)


def test_release_all_drains_and_staggers():
    window, controller, scheduler = scheduler_for(stagger_ms=25)
    add_script(window, GTM)
    add_script(window, PIXEL)
    window.loop.run_microtasks()

    assert scheduler.release_all("manual") == 2
    assert controller.queue == []
    assert not controller.observing
    assert scheduler.released == []

    window.loop.advance(25)
    assert scheduler.release_log == [(0, GTM), (25, PIXEL)]
    assert scheduler.done


def test_second_release_is_a_no_op():
    window, controller, scheduler = scheduler_for()
    add_script(window, GTM)
    window.loop.run_microtasks()

    assert scheduler.release_all("timer") == 1
    assert scheduler.release_all("load") == 0
    window.loop.run_until_idle()
    assert scheduler.released == [GTM]
    assert scheduler.release_reason == "timer"


def test_arm_registers_timer_and_load_listener():
    window, controller, scheduler = scheduler_for(release_after_ms=1000)
    scheduler.arm()
    assert window.loop.pending_timers == 1
    assert window.listener_count("load") == 1

    scheduler.release_all("manual")
    assert window.loop.pending_timers == 0
    assert window.listener_count("load") == 0


def test_replacement_is_not_intercepted_again():
    window, controller, scheduler = scheduler_for()
    original = add_script(window, GTM, id="gtm-tag")
    window.loop.run_microtasks()
    record = controller.queue[0]

    # insert directly, with the observer still attached
    scheduler._insert(record)
    window.loop.run_microtasks()

    replacement = window.document.head.children[-1]
    assert replacement is not original
    assert replacement.src == GTM
    assert replacement.get_attribute("id") == "gtm-tag"
    assert controller.dispositions[replacement.node_id] == Disposition.RELEASED
    assert controller.queue == [record]
    assert record.original_element is None
    assert window.document.requested_scripts == [GTM]


def test_original_placeholder_stays_inert():
    window, controller, scheduler = scheduler_for(release_after_ms=0)
    original = add_script(window, GTM)
    window.loop.run_microtasks()
    scheduler.arm()
    window.loop.run_until_idle()

    assert original.is_connected
    assert original.type == "text/deferred"
    assert not original.already_started
    assert window.document.requested_scripts.count(GTM) == 1
