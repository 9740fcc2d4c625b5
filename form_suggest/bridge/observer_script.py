"""JavaScript side of the field observation protocol.

The observer runs inside the page's own event loop. It is installed by a
bootstrap that first tears down any previous instance, so evaluating it twice
or re-running it as an init script after navigation is safe. Every call it
makes back to the host goes through one exposed binding as
``binding(callName, argsArray)`` and is fire-and-forget on the page side.
"""

from __future__ import annotations

import json
from typing import Optional

from ..config import settings

TEXT_FIELD_TYPES = ("text", "email", "tel", "number", "search", "url")
SECRET_AUTOCOMPLETE_TOKENS = ("current-password", "new-password")


def is_eligible_field_type(field_type: Optional[str]) -> bool:
    return (field_type or "text").strip().lower() in TEXT_FIELD_TYPES


def field_selector() -> str:
    parts = ["input:not([type])"]
    parts.extend(f'input[type="{field_type}"]' for field_type in TEXT_FIELD_TYPES)
    return ", ".join(parts)


_OBSERVER_TEMPLATE = r"""
(function (config) {
    var previous = window[config.registryKey];
    if (previous && typeof previous.teardown === "function") {
        try {
            previous.teardown();
        } catch (err) {
            // stale instance from an earlier document state
        }
    }

    function FormSuggestObserver(config) {
        this.config = config;
        this.trackedInputs = {};
        this.trackedElements = new WeakSet();
        this.trackedForms = new WeakSet();
        this.listeners = [];
        this.currentFocusedInput = null;
        this.lastUrl = window.location.href;
        this.urlTimer = null;
        this.mutationObserver = null;
        this.writing = false;
        this.installed = false;
    }

    FormSuggestObserver.prototype.send = function (callName, args) {
        var bridge = window[this.config.bindingName];
        if (typeof bridge !== "function") {
            return;
        }
        try {
            var pending = bridge(callName, args);
            if (pending && typeof pending.catch === "function") {
                pending.catch(function () {});
            }
        } catch (err) {
            // the host side may already be gone
        }
    };

    FormSuggestObserver.prototype.reportError = function (context, error) {
        var message = context + ": " + (error && error.message ? error.message : String(error));
        this.send("logError", [message]);
    };

    FormSuggestObserver.prototype.listen = function (target, type, handler) {
        target.addEventListener(type, handler, true);
        this.listeners.push([target, type, handler]);
    };

    FormSuggestObserver.prototype.fieldType = function (input) {
        return String(input.type || input.getAttribute("type") || "text").toLowerCase();
    };

    FormSuggestObserver.prototype.isEligible = function (input) {
        if (!input || input.nodeType !== 1 || input.tagName !== "INPUT") {
            return false;
        }
        var type = this.fieldType(input);
        if (type === "password") {
            return false;
        }
        // Re-typed password inputs ("show password" toggles) keep their autocomplete hint.
        var hints = (input.getAttribute("autocomplete") || "").toLowerCase().split(/\s+/);
        for (var i = 0; i < hints.length; i++) {
            if (this.config.secretAutocomplete.indexOf(hints[i]) >= 0) {
                return false;
            }
        }
        return this.config.textTypes.indexOf(type) >= 0;
    };

    FormSuggestObserver.prototype.getInputIdentifier = function (input) {
        if (!this.isEligible(input)) {
            return null;
        }
        return input.id || input.getAttribute("name") || null;
    };

    FormSuggestObserver.prototype.trackInput = function (input) {
        var self = this;
        var identifier = this.getInputIdentifier(input);
        if (!identifier) {
            return false;
        }
        this.trackedInputs[identifier] = input;
        if (this.trackedElements.has(input)) {
            return true;
        }
        this.trackedElements.add(input);

        this.listen(input, "focus", function () {
            try {
                var fieldIdentifier = self.getInputIdentifier(input);
                if (!fieldIdentifier) {
                    return;
                }
                self.currentFocusedInput = input;
                self.send("inputFocused", [fieldIdentifier, self.fieldType(input)]);
            } catch (err) {
                self.reportError("Focus event error", err);
            }
        });

        this.listen(input, "blur", function () {
            try {
                var fieldIdentifier = self.getInputIdentifier(input);
                if (self.currentFocusedInput === input) {
                    self.currentFocusedInput = null;
                }
                if (!fieldIdentifier) {
                    return;
                }
                var value = input.value;
                if (value && value.trim() !== "") {
                    self.send("saveSubmittedValue", [fieldIdentifier, value, self.fieldType(input)]);
                }
                self.send("inputBlurred", [fieldIdentifier]);
            } catch (err) {
                self.reportError("Blur event error", err);
            }
        });

        this.listen(input, "input", function () {
            if (self.writing) {
                return;
            }
            try {
                var fieldIdentifier = self.getInputIdentifier(input);
                if (!fieldIdentifier) {
                    return;
                }
                self.send("inputValueChanged", [fieldIdentifier, input.value]);
            } catch (err) {
                self.reportError("Input event error", err);
            }
        });

        if (input.form) {
            this.trackForm(input.form);
        }
        return true;
    };

    FormSuggestObserver.prototype.trackForm = function (form) {
        var self = this;
        if (!form || this.trackedForms.has(form)) {
            return false;
        }
        this.trackedForms.add(form);
        this.listen(form, "submit", function () {
            try {
                self.saveForm(form);
            } catch (err) {
                self.reportError("Form submit error", err);
            }
        });
        return true;
    };

    FormSuggestObserver.prototype.saveForm = function (form) {
        var fields = form.querySelectorAll(this.config.fieldSelector);
        for (var i = 0; i < fields.length; i++) {
            var input = fields[i];
            var fieldIdentifier = this.getInputIdentifier(input);
            var value = input.value;
            if (fieldIdentifier && value && value.trim() !== "") {
                this.send("saveSubmittedValue", [fieldIdentifier, value, this.fieldType(input)]);
            }
        }
    };

    FormSuggestObserver.prototype.scan = function (root) {
        var count = 0;
        if (!root) {
            return count;
        }
        if (root.nodeType === 1 && root.matches && root.matches(this.config.fieldSelector)) {
            if (this.trackInput(root)) {
                count++;
            }
        }
        if (root.nodeType === 1 && root.tagName === "FORM") {
            this.trackForm(root);
        }
        if (!root.querySelectorAll) {
            return count;
        }
        var inputs = root.querySelectorAll(this.config.fieldSelector);
        for (var i = 0; i < inputs.length; i++) {
            if (this.trackInput(inputs[i])) {
                count++;
            }
        }
        var forms = root.querySelectorAll("form");
        for (var j = 0; j < forms.length; j++) {
            this.trackForm(forms[j]);
        }
        return count;
    };

    FormSuggestObserver.prototype.scanDocument = function () {
        var count = this.scan(document);
        this.send("reportFieldCount", [count]);
        return count;
    };

    FormSuggestObserver.prototype.startMutationObserver = function () {
        var self = this;
        var root = document.documentElement;
        if (!root || typeof MutationObserver === "undefined") {
            return;
        }
        this.mutationObserver = new MutationObserver(function (mutations) {
            try {
                for (var i = 0; i < mutations.length; i++) {
                    var added = mutations[i].addedNodes;
                    for (var j = 0; j < added.length; j++) {
                        if (added[j].nodeType === 1) {
                            self.scan(added[j]);
                        }
                    }
                }
            } catch (err) {
                self.reportError("Mutation scan error", err);
            }
        });
        this.mutationObserver.observe(root, { childList: true, subtree: true });
    };

    FormSuggestObserver.prototype.startUrlPoll = function () {
        var self = this;
        this.urlTimer = window.setInterval(function () {
            var currentUrl = window.location.href;
            if (currentUrl === self.lastUrl) {
                return;
            }
            self.lastUrl = currentUrl;
            if (window === window.top) {
                self.send("pageUrlChanged", [currentUrl]);
            }
            self.scanDocument();
        }, this.config.pollIntervalMs);
    };

    FormSuggestObserver.prototype.install = function () {
        var self = this;
        if (this.installed) {
            return true;
        }
        this.installed = true;
        window[this.config.registryKey] = this;
        if (window === window.top) {
            this.send("pageUrlChanged", [window.location.href]);
        }
        if (document.readyState === "loading") {
            this.listen(document, "DOMContentLoaded", function () {
                self.scanDocument();
                self.startMutationObserver();
            });
        } else {
            this.scanDocument();
            this.startMutationObserver();
        }
        this.startUrlPoll();
        return true;
    };

    FormSuggestObserver.prototype.teardown = function () {
        for (var i = 0; i < this.listeners.length; i++) {
            var entry = this.listeners[i];
            entry[0].removeEventListener(entry[1], entry[2], true);
        }
        this.listeners = [];
        if (this.mutationObserver) {
            this.mutationObserver.disconnect();
            this.mutationObserver = null;
        }
        if (this.urlTimer !== null) {
            window.clearInterval(this.urlTimer);
            this.urlTimer = null;
        }
        this.trackedInputs = {};
        this.trackedElements = new WeakSet();
        this.trackedForms = new WeakSet();
        this.currentFocusedInput = null;
        this.installed = false;
        if (window[this.config.registryKey] === this) {
            delete window[this.config.registryKey];
        }
    };

    FormSuggestObserver.prototype.findInput = function (fieldIdentifier) {
        var input = this.trackedInputs[fieldIdentifier];
        if (input && input.isConnected) {
            return input;
        }
        input = document.getElementById(fieldIdentifier);
        if (!this.isEligible(input)) {
            var named = document.getElementsByName(fieldIdentifier);
            input = named.length ? named[0] : null;
        }
        return this.isEligible(input) ? input : null;
    };

    FormSuggestObserver.prototype.setInputValue = function (fieldIdentifier, value) {
        var input = this.findInput(fieldIdentifier);
        if (!input) {
            return false;
        }
        var descriptor = Object.getOwnPropertyDescriptor(HTMLInputElement.prototype, "value");
        this.writing = true;
        try {
            if (descriptor && descriptor.set) {
                descriptor.set.call(input, value);
            } else {
                input.value = value;
            }
            input.dispatchEvent(new Event("input", { bubbles: true }));
            input.dispatchEvent(new Event("change", { bubbles: true }));
            input.dispatchEvent(new KeyboardEvent("keydown", { bubbles: true, key: "Unidentified" }));
            input.dispatchEvent(new KeyboardEvent("keyup", { bubbles: true, key: "Unidentified" }));
        } finally {
            this.writing = false;
        }
        return true;
    };

    FormSuggestObserver.prototype.focusedField = function () {
        var input = this.currentFocusedInput;
        if (!input || !input.isConnected) {
            return { focused: false };
        }
        return {
            focused: true,
            identifier: this.getInputIdentifier(input),
            type: this.fieldType(input),
            value: input.value
        };
    };

    return new FormSuggestObserver(config).install();
})(__CONFIG__);
"""

PRESENCE_CHECK_SCRIPT = """
([registryKey, bindingName]) => {
    const observer = window[registryKey];
    return JSON.stringify({
        observer: Boolean(observer && observer.installed),
        bridge: typeof window[bindingName] === "function",
    });
}
"""

SET_INPUT_VALUE_SCRIPT = """
([registryKey, fieldIdentifier, value]) => {
    const observer = window[registryKey];
    if (!observer) {
        return false;
    }
    return observer.setInputValue(fieldIdentifier, value);
}
"""

FOCUSED_FIELD_SCRIPT = """
(registryKey) => {
    const observer = window[registryKey];
    return observer ? observer.focusedField() : { focused: false };
}
"""

TEARDOWN_SCRIPT = """
(registryKey) => {
    const observer = window[registryKey];
    if (!observer) {
        return false;
    }
    observer.teardown();
    return true;
}
"""


def build_observer_script(
    binding_name: str | None = None,
    registry_key: str | None = None,
    poll_interval_ms: int | None = None,
) -> str:
    config = {
        "bindingName": binding_name or settings.bridge_binding_name,
        "registryKey": registry_key or settings.observer_registry_key,
        "pollIntervalMs": max(100, int(poll_interval_ms or settings.url_poll_interval_ms)),
        "textTypes": list(TEXT_FIELD_TYPES),
        "secretAutocomplete": list(SECRET_AUTOCOMPLETE_TOKENS),
        "fieldSelector": field_selector(),
    }
    return _OBSERVER_TEMPLATE.replace("__CONFIG__", json.dumps(config)).strip()
