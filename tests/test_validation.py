"""
tests/test_validation.py — Option Schema & Custom-Id Tests
============================================================
"""

from __future__ import annotations

import pytest

from tasklink.engine.validation import (
    ALLOWLIST_ANALYTICS_OPTIONS,
    CREATE_TASK_OPTIONS,
    LINK_COMMUNITY_OPTIONS,
    LIST_TASKS_OPTIONS,
    SECURITY_OPTIONS,
    AllowlistAnalyticsOptions,
    CreateTaskOptions,
    CustomIdError,
    LinkCommunityOptions,
    ListTasksOptions,
    OptionKind,
    OptionSpec,
    OptionValidationError,
    SecurityOptions,
    is_valid_custom_id,
    parse_custom_id,
    parse_options,
)

ARITIES = {
    "complete_task": 1,
    "view_task": 1,
    "tasks_page": 2,
    "refresh_status": 0,
    "help": 1,
}


def _task(**overrides):
    raw = {"task_type": "twitter_follow", "title": "Follow us", "description": "Follow the account"}
    raw.update(overrides)
    return raw


class TestParseOptions:
    def test_create_task_with_defaults(self):
        opts = parse_options(CREATE_TASK_OPTIONS, _task(), CreateTaskOptions)
        assert opts == CreateTaskOptions("twitter_follow", "Follow us", "Follow the account", 0, 168, None)

    def test_strings_are_trimmed(self):
        opts = parse_options(LINK_COMMUNITY_OPTIONS, {"community_id": "  abc  "}, LinkCommunityOptions)
        assert opts.community_id == "abc"

    def test_missing_required(self):
        with pytest.raises(OptionValidationError) as info:
            parse_options(LINK_COMMUNITY_OPTIONS, {}, LinkCommunityOptions)
        assert info.value.field == "community_id"
        assert info.value.message == "Invalid community id: this option is required"

    def test_unknown_field_rejected(self):
        with pytest.raises(OptionValidationError) as info:
            parse_options(LIST_TASKS_OPTIONS, {"status": "active", "extra": 1}, ListTasksOptions)
        assert info.value.message == "Invalid option: extra"

    def test_choice_enforced(self):
        with pytest.raises(OptionValidationError) as info:
            parse_options(CREATE_TASK_OPTIONS, _task(task_type="instagram_like"), CreateTaskOptions)
        assert info.value.message.startswith("Invalid task type: choose one of")

    def test_max_length(self):
        with pytest.raises(OptionValidationError) as info:
            parse_options(CREATE_TASK_OPTIONS, _task(title="x" * 101), CreateTaskOptions)
        assert info.value.message == "Invalid title: must be at most 100 characters"

    def test_blank_after_trim_fails_min_length(self):
        with pytest.raises(OptionValidationError):
            parse_options(LINK_COMMUNITY_OPTIONS, {"community_id": "   "}, LinkCommunityOptions)

    @pytest.mark.parametrize("value", [-1, 1_000_001])
    def test_integer_range(self, value):
        with pytest.raises(OptionValidationError) as info:
            parse_options(CREATE_TASK_OPTIONS, _task(points=value), CreateTaskOptions)
        assert info.value.field == "points"

    @pytest.mark.parametrize("value", ["10", 1.5, True])
    def test_integer_type(self, value):
        with pytest.raises(OptionValidationError):
            parse_options(CREATE_TASK_OPTIONS, _task(points=value), CreateTaskOptions)

    def test_duration_uses_label(self):
        with pytest.raises(OptionValidationError) as info:
            parse_options(CREATE_TASK_OPTIONS, _task(duration_hours=0), CreateTaskOptions)
        assert info.value.message == "Invalid duration: must be at least 1"

    def test_text_expected(self):
        with pytest.raises(OptionValidationError) as info:
            parse_options(CREATE_TASK_OPTIONS, _task(title=5), CreateTaskOptions)
        assert info.value.message == "Invalid title: expected text"

    def test_optional_defaults(self):
        assert parse_options(LIST_TASKS_OPTIONS, {}, ListTasksOptions).status == "active"
        opts = parse_options(ALLOWLIST_ANALYTICS_OPTIONS, {}, AllowlistAnalyticsOptions)
        assert (opts.allowlist_id, opts.period) == (None, "7d")

    def test_security_lockdown_options(self):
        opts = parse_options(
            SECURITY_OPTIONS, {"action": "lockdown", "duration_minutes": 30, "reason": "raid"}, SecurityOptions,
        )
        assert opts == SecurityOptions("lockdown", 30, "raid")

    @pytest.mark.parametrize("value", ["c1", "summer-drop", "drop_2024", "team.alpha", "org:42"])
    def test_resource_ids_accept_key_charset(self, value):
        opts = parse_options(LINK_COMMUNITY_OPTIONS, {"community_id": value}, LinkCommunityOptions)
        assert opts.community_id == value

    @pytest.mark.parametrize("value", ["my community", "drop/2024", "caf\u00e9", "a*"])
    def test_resource_ids_reject_other_characters(self, value):
        with pytest.raises(OptionValidationError) as info:
            parse_options(LINK_COMMUNITY_OPTIONS, {"community_id": value}, LinkCommunityOptions)
        assert info.value.field == "community_id"
        assert info.value.message == (
            "Invalid community id: use only letters, digits, '.', '_', ':' or '-'"
        )

    def test_allowlist_ids_share_the_charset(self):
        with pytest.raises(OptionValidationError):
            parse_options(ALLOWLIST_ANALYTICS_OPTIONS, {"allowlist_id": "a b"}, AllowlistAnalyticsOptions)


class TestOptionPayload:
    def test_choices_carry_labels(self):
        spec = CREATE_TASK_OPTIONS[0]
        payload = spec.to_payload({"twitter_follow": "Twitter/X Follow"})
        assert payload["type"] == 3
        assert payload["required"] is True
        assert payload["choices"][0] == {"name": "Twitter/X Follow", "value": "twitter_follow"}

    def test_integer_bounds(self):
        spec = OptionSpec("n", "number", kind=OptionKind.INTEGER, min_value=1, max_value=9)
        assert spec.to_payload() == {
            "type": 4, "name": "n", "description": "number", "required": False,
            "min_value": 1, "max_value": 9,
        }


class TestCustomIds:
    def test_no_arguments(self):
        assert parse_custom_id("refresh_status", ARITIES) == ("refresh_status", ())

    def test_one_argument(self):
        assert parse_custom_id("complete_task_abc123", ARITIES) == ("complete_task", ("abc123",))

    def test_two_arguments(self):
        assert parse_custom_id("tasks_page_active_2", ARITIES) == ("tasks_page", ("active", "2"))

    def test_longest_action_wins(self):
        arities = {"view": 2, "view_task": 1}
        assert parse_custom_id("view_task_x", arities) == ("view_task", ("x",))

    def test_wrong_arity_is_not_suspicious(self):
        with pytest.raises(CustomIdError) as info:
            parse_custom_id("complete_task", ARITIES)
        assert info.value.suspicious is False

    def test_unknown_action_is_not_suspicious(self):
        with pytest.raises(CustomIdError) as info:
            parse_custom_id("launch_rocket", ARITIES)
        assert info.value.suspicious is False

    @pytest.mark.parametrize(
        "custom_id",
        [
            "complete_task_abc; rm -rf /",
            "complete_task_$(whoami)",
            "complete task",
            "Complete_task_1",
            "complete_task_" + "A" * 65,
            "help_" + "_".join(["a" * 20] * 5),
            "",
        ],
    )
    def test_grammar_violations_are_suspicious(self, custom_id):
        with pytest.raises(CustomIdError) as info:
            parse_custom_id(custom_id, ARITIES)
        assert info.value.suspicious is True

    def test_oversize_is_suspicious(self):
        with pytest.raises(CustomIdError) as info:
            parse_custom_id("a" * 101, ARITIES)
        assert info.value.suspicious is True

    def test_is_valid_custom_id(self):
        assert is_valid_custom_id("view_task_abc")
        assert not is_valid_custom_id("unlink_community_$(x)")
        assert not is_valid_custom_id(None)
