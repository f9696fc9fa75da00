"""Tests for ConversationStateMachine — the admissions dialogue table."""
import pytest

from context import content
from context.state_machine import (
    ConversationStateMachine, StateSpec, TransitionResult, build_default_table,
)
from models.schemas import ConversationState as S


def run(sm, inputs, state=S.WELCOME, data=None):
    """Feed a list of inputs, following successful transitions."""
    data = dict(data or {})
    result = None
    for text in inputs:
        result = sm.process(state, text, data)
        data = result.user_data
        state = result.next_state
    return state, data, result


class TestTableValidation:
    def test_default_table_is_complete(self):
        table = build_default_table()
        assert set(table) == set(S)

    def test_missing_state_rejected(self):
        table = build_default_table()
        del table[S.CHANNEL]
        with pytest.raises(ValueError, match="channel"):
            ConversationStateMachine(table=table)

    def test_complete_must_not_require_input(self):
        table = build_default_table()
        table[S.COMPLETE] = StateSpec(prompt_template="done")
        with pytest.raises(ValueError, match="complete"):
            ConversationStateMachine(table=table)

    def test_describe(self, state_machine):
        info = state_machine.describe("timeslot")
        assert info["possible_next_states"] == ["complete", "custom_time"]
        assert info["has_validator"] is True
        assert state_machine.describe(S.COMPLETE)["is_terminal"] is True


class TestTransitions:
    def test_welcome_accepts_anything(self, state_machine):
        result = state_machine.process(S.WELCOME, "hello", {})
        assert result.success
        assert result.next_state == S.MAJOR
        assert result.transitioned

    def test_major_from_menu_goes_to_phone(self, state_machine):
        result = state_machine.process(S.MAJOR, "Design", {})
        assert result.next_state == S.PHONE
        assert result.user_data["major"] == "Design"

    def test_major_other_branch(self, state_machine):
        result = state_machine.process(S.MAJOR, "other", {})
        assert result.next_state == S.MAJOR_OTHER
        result = state_machine.process(S.MAJOR_OTHER, "Marine Biology", result.user_data)
        assert result.next_state == S.PHONE
        assert result.user_data["major"] == "Marine Biology"

    def test_custom_major_length(self, state_machine):
        result = state_machine.process(S.MAJOR_OTHER, "x", {})
        assert not result.success
        assert result.error_kind == "BAD_LENGTH"
        assert result.next_state == S.MAJOR_OTHER

    def test_phone_extracts_fields(self, state_machine):
        result = state_machine.process(S.PHONE, " +84 901 234 567 ", {"major": "Design"})
        assert result.next_state == S.CHANNEL
        data = result.user_data
        assert data["phone"] == "+84 901 234 567"
        assert data["phone_clean"] == "+84901234567"
        assert data["phone_standardized"] == "0901234567"
        assert data["phone_network"] == "mobifone"
        assert data["major"] == "Design"

    def test_channel_menu_is_case_insensitive(self, state_machine):
        result = state_machine.process(S.CHANNEL, "  zalo ", {})
        assert result.success
        assert result.user_data["channel"] == "Zalo"

    def test_channel_rejects_free_text(self, state_machine):
        result = state_machine.process(S.CHANNEL, "carrier pigeon", {})
        assert not result.success
        assert result.error_kind == "NOT_AN_OPTION"
        assert result.message == content.CHANNEL_ERROR

    def test_timeslot_custom_branch(self, state_machine):
        result = state_machine.process(S.TIMESLOT, "Choose another time", {})
        assert result.next_state == S.CUSTOM_TIME
        result = state_machine.process(S.CUSTOM_TIME, "Tuesday 9am", result.user_data)
        assert result.next_state == S.COMPLETE
        assert result.user_data["timeslot"] == "Tuesday 9am"

    def test_complete_accepts_nothing(self, state_machine):
        result = state_machine.process(S.COMPLETE, "hello again", {"major": "Design"})
        assert not result.success
        assert result.next_state == S.COMPLETE
        assert result.error_kind == "NO_TRANSITION"

    def test_nudge_is_not_processed_here(self, state_machine):
        result = state_machine.process(S.NUDGE, "yes", {})
        assert result.error_kind == "NO_TRANSITION"
        assert result.next_state == S.NUDGE

    def test_unknown_state_restarts(self, state_machine):
        result = state_machine.process("graduation", "hi", {"major": "Design"})
        assert not result.success
        assert result.error_kind == "INVALID_STATE"
        assert result.next_state == S.WELCOME
        assert result.message == content.UNKNOWN_STATE
        assert result.user_data == {"major": "Design"}

    def test_input_data_is_never_mutated(self, state_machine):
        data = {"major": "Design", "retry_count": 1}
        state_machine.process(S.PHONE, "0901234567", data)
        state_machine.process(S.PHONE, "nope", data)
        assert data == {"major": "Design", "retry_count": 1}

    def test_deterministic(self, state_machine):
        a = state_machine.process(S.PHONE, "0961234567", {"major": "IT"})
        b = state_machine.process(S.PHONE, "0961234567", {"major": "IT"})
        assert (a.next_state, a.user_data) == (b.next_state, b.user_data)

    def test_full_dialogue(self, state_machine):
        state, data, _ = run(
            state_machine, ["Yes interested", "CNTT", "0901234567", "Zalo", "Evening"],
        )
        assert state == S.COMPLETE
        assert data["major"] == "CNTT"
        assert data["phone"] == "0901234567"
        assert data["phone_standardized"] == "0901234567"
        assert data["channel"] == "Zalo"
        assert data["timeslot"] == "Evening"


class TestRetriesAndEscalation:
    def test_retry_count_accumulates(self, state_machine):
        first = state_machine.process(S.PHONE, "abc", {"major": "Design"})
        assert first.user_data["retry_count"] == 1
        assert first.next_state == S.PHONE
        assert first.message == content.PHONE_ERROR
        second = state_machine.process(S.PHONE, "123", first.user_data)
        assert second.user_data["retry_count"] == 2
        assert not second.escalated

    def test_success_resets_retry_count(self, state_machine):
        result = state_machine.process(S.PHONE, "0901234567", {"retry_count": 2})
        assert result.user_data["retry_count"] == 0

    def test_third_failure_escalates(self, state_machine):
        _, data, result = run(state_machine, ["abc", "123", "0121234567"], state=S.PHONE,
                              data={"major": "Design"})
        assert result.escalated
        assert result.next_state == S.WELCOME
        assert "1900 6868" in result.message
        assert result.error_kind == "UNASSIGNED_PREFIX"
        assert data["major"] == "Design"
        assert data["retry_count"] == 0

    def test_escalation_can_clear_data(self):
        sm = ConversationStateMachine(max_retries=2, reset_user_data_on_escalation=True)
        _, data, result = run(sm, ["abc", "abc"], state=S.PHONE, data={"major": "Design"})
        assert result.escalated
        assert data == {"retry_count": 0}

    def test_result_repr(self, state_machine):
        result = state_machine.process(S.WELCOME, "hi", {})
        assert isinstance(result, TransitionResult)
        assert "Transition" in repr(result)
        assert bool(result) is True


class TestRendering:
    def test_welcome_with_name(self, state_machine):
        text = state_machine.render(S.WELCOME, {"first_name": "Linh"})
        assert text.startswith("Hi Linh")

    def test_welcome_without_name_uses_generic(self, state_machine):
        text = state_machine.render(S.WELCOME, {})
        assert "{{" not in text
        assert text.startswith("Hi there")

    def test_missing_placeholder_stays_verbatim(self):
        assert ConversationStateMachine.fill("A {{x}} B", {}) == "A {{x}} B"
        assert ConversationStateMachine.fill("A {{x}} B", {"x": ""}) == "A {{x}} B"
        assert ConversationStateMachine.fill("A {{x}} B", {"x": 7}) == "A 7 B"

    def test_complete_message(self, state_machine):
        text = state_machine.render(S.COMPLETE, {
            "timeslot": "Evening", "channel": "Zalo", "major": "Design", "first_name": "Linh",
        })
        assert "Evening" in text and "Zalo" in text and "Design" in text

    def test_nudge_generic_when_no_major(self, state_machine):
        assert state_machine.render(S.NUDGE, {}) == content.NUDGE_GENERIC

    def test_quick_replies(self, state_machine):
        assert state_machine.quick_replies(S.CHANNEL) == ["Call", "Zalo", "Email"]
        assert state_machine.quick_replies("bogus") == []

    def test_is_terminal(self, state_machine):
        assert state_machine.is_terminal(S.COMPLETE)
        assert not state_machine.is_terminal(S.NUDGE)
        assert not state_machine.is_terminal("bogus")

    def test_continuation_and_closing(self, state_machine):
        assert state_machine.continuation_message(S.CHANNEL) == content.RESUME["channel"]
        assert state_machine.closing_message({"first_name": "Linh", "major": "Design"}).startswith("No problem Linh")
        assert state_machine.closing_message({}) == content.CLOSING_GENERIC
