import asyncio
import json

import pytest
from playwright.async_api import Error as PlaywrightError, async_playwright

from form_suggest.bridge.observer_script import (
    FOCUSED_FIELD_SCRIPT,
    PRESENCE_CHECK_SCRIPT,
    SET_INPUT_VALUE_SCRIPT,
    TEARDOWN_SCRIPT,
    build_observer_script,
)

BINDING = "__testBridge"
REGISTRY = "__testObserver"

FORM_HTML = """
<html><body>
  <form id="signup" onsubmit="return false">
    <input id="email" type="email">
    <input name="city">
    <input id="pw" type="password">
    <input type="text" placeholder="anonymous">
    <input id="agree" type="checkbox">
    <button id="go" type="submit">Go</button>
  </form>
</body></html>
"""


def run_with_observer(scenario):
    async def run():
        playwright = await async_playwright().start()
        try:
            try:
                browser = await playwright.chromium.launch(headless=True)
            except PlaywrightError as exc:
                pytest.skip(f"chromium not available: {exc}")
            try:
                page = await browser.new_page()
                calls = []
                await page.expose_binding(BINDING, lambda _source, name, args: calls.append((name, args)))
                await page.set_content(FORM_HTML)
                await page.evaluate(build_observer_script(BINDING, REGISTRY))
                await page.wait_for_timeout(50)
                await scenario(page, calls)
            finally:
                await browser.close()
        finally:
            await playwright.stop()

    asyncio.run(run())


def names(calls, field=None):
    return [name for name, args in calls if field is None or (args and args[0] == field)]


def test_install_reports_url_and_field_count():
    async def scenario(page, calls):
        assert ("pageUrlChanged", ["about:blank"]) in calls
        # email and city only: password, anonymous and checkbox inputs are skipped
        assert ("reportFieldCount", [2]) in calls
        presence = json.loads(await page.evaluate(PRESENCE_CHECK_SCRIPT, [REGISTRY, BINDING]))
        assert presence == {"observer": True, "bridge": True}

    run_with_observer(scenario)


def test_focus_type_blur_sequence():
    async def scenario(page, calls):
        calls.clear()
        await page.focus("#email")
        await page.keyboard.type("a@b")
        await page.focus("[name=city]")
        await page.wait_for_timeout(100)

        email_calls = [(n, a) for n, a in calls if a and a[0] == "email"]
        assert email_calls[0] == ("inputFocused", ["email", "email"])
        assert ("inputValueChanged", ["email", "a@b"]) in email_calls
        assert [n for n, _ in email_calls[-2:]] == ["saveSubmittedValue", "inputBlurred"]
        assert ("saveSubmittedValue", ["email", "a@b", "email"]) in email_calls
        assert ("inputFocused", ["city", "text"]) in calls

    run_with_observer(scenario)


def test_empty_blur_only_reports_blur():
    async def scenario(page, calls):
        calls.clear()
        await page.focus("[name=city]")
        await page.focus("#email")
        await page.wait_for_timeout(100)
        assert names(calls, "city") == ["inputFocused", "inputBlurred"]

    run_with_observer(scenario)


def test_password_field_makes_no_bridge_calls():
    async def scenario(page, calls):
        calls.clear()
        await page.focus("#pw")
        await page.keyboard.type("hunter2")
        await page.focus("#email")
        await page.evaluate("document.getElementById('signup').requestSubmit()")
        await page.wait_for_timeout(100)
        assert names(calls, "pw") == []
        assert all("hunter2" not in args for _name, args in calls)

    run_with_observer(scenario)


def test_revealed_password_is_never_saved():
    async def scenario(page, calls):
        # a "show password" toggle flips the type to text but keeps the autocomplete hint
        await page.evaluate(
            """() => {
                const input = document.createElement('input');
                input.id = 'revealed';
                input.type = 'text';
                input.setAttribute('autocomplete', 'section-login current-password');
                document.getElementById('signup').appendChild(input);
            }"""
        )
        await page.wait_for_timeout(50)
        calls.clear()
        await page.fill("#revealed", "hunter2")
        await page.evaluate("document.getElementById('signup').requestSubmit()")
        await page.wait_for_timeout(100)
        assert names(calls, "revealed") == []
        assert all("hunter2" not in args for _name, args in calls)

    run_with_observer(scenario)


def test_submit_saves_every_filled_field():
    async def scenario(page, calls):
        await page.fill("#email", "a@b.com")
        await page.fill("[name=city]", "Oslo")
        calls.clear()
        await page.evaluate("document.getElementById('signup').requestSubmit()")
        await page.wait_for_timeout(100)
        saved = [args for name, args in calls if name == "saveSubmittedValue"]
        assert ["email", "a@b.com", "email"] in saved
        assert ["city", "Oslo", "text"] in saved

    run_with_observer(scenario)


def test_inserted_fields_are_tracked():
    async def scenario(page, calls):
        await page.evaluate(
            """() => {
                const input = document.createElement('input');
                input.id = 'late';
                document.body.appendChild(input);
            }"""
        )
        await page.wait_for_timeout(50)
        calls.clear()
        await page.focus("#late")
        await page.wait_for_timeout(100)
        assert names(calls, "late") == ["inputFocused"]

    run_with_observer(scenario)


def test_set_input_value_writes_without_echo():
    async def scenario(page, calls):
        await page.evaluate(
            "() => { window.__events = []; const el = document.getElementById('email');"
            " ['input', 'change', 'keydown', 'keyup'].forEach(t => el.addEventListener(t, () => window.__events.push(t))); }"
        )
        await page.focus("#email")
        calls.clear()
        assert await page.evaluate(SET_INPUT_VALUE_SCRIPT, [REGISTRY, "email", "x@y.com"]) is True
        assert await page.input_value("#email") == "x@y.com"
        assert await page.evaluate("window.__events") == ["input", "change", "keydown", "keyup"]
        await page.wait_for_timeout(100)
        assert "inputValueChanged" not in names(calls)

        assert await page.evaluate(SET_INPUT_VALUE_SCRIPT, [REGISTRY, "missing", "v"]) is False
        assert await page.evaluate(SET_INPUT_VALUE_SCRIPT, [REGISTRY, "pw", "v"]) is False

        focused = await page.evaluate(FOCUSED_FIELD_SCRIPT, REGISTRY)
        assert focused == {"focused": True, "identifier": "email", "type": "email", "value": "x@y.com"}

    run_with_observer(scenario)


def test_reinstall_and_teardown():
    async def scenario(page, calls):
        await page.evaluate(build_observer_script(BINDING, REGISTRY))
        calls.clear()
        await page.focus("#email")
        await page.wait_for_timeout(100)
        # one observer instance only, so a single focus call
        assert names(calls, "email") == ["inputFocused"]

        assert await page.evaluate(TEARDOWN_SCRIPT, REGISTRY) is True
        presence = json.loads(await page.evaluate(PRESENCE_CHECK_SCRIPT, [REGISTRY, BINDING]))
        assert presence["observer"] is False
        calls.clear()
        await page.focus("[name=city]")
        await page.wait_for_timeout(100)
        assert calls == []

    run_with_observer(scenario)
