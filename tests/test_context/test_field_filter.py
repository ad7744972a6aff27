"""Tests for budgeted entity field filtering."""

import pytest

from contextforge.context.field_filter import (
    TRUNCATION_FLOOR_TOKENS,
    extract_field_value,
    filter_entity_fields,
    format_entity_context,
    format_field_label,
    truncate_field_value,
    truncate_string,
    value_tokens,
)
from contextforge.context.modes import (
    ChatMode,
    FieldConfig,
    FieldPriority,
    get_mode_context_config,
)
from contextforge.entities.ids import EntityKind
from contextforge.entities.models import Character, VoiceProfile


def _character(**overrides):
    data = dict(
        id="#ELARA_902",
        name="Elara",
        role="protagonist",
        core_concept="A disgraced knight seeking redemption",
        motivations=[f"motive-{i}" for i in range(1, 7)],
        flaws=["pride", "temper"],
        backstory_prose="Born in the ash plains. " * 40,
        voice_profile=VoiceProfile(
            sample_dialogue=["Stand fast.", "Not today."], tone="clipped"
        ),
    )
    data.update(overrides)
    return Character(**data)


class TestFilterEntityFields:
    def test_caps_list_fields(self):
        configs = [
            FieldConfig("name", FieldPriority.HIGH),
            FieldConfig("motivations", FieldPriority.HIGH, max_items=5),
        ]
        result = filter_entity_fields(_character(), configs, 1000)
        assert result.fields["motivations"] == [f"motive-{i}" for i in range(1, 6)]
        assert result.included_fields == ["name", "motivations"]
        assert result.entity_kind is EntityKind.CHARACTER

    def test_priority_order(self):
        configs = [
            FieldConfig("flaws", FieldPriority.LOW),
            FieldConfig("role", FieldPriority.MEDIUM),
            FieldConfig("name", FieldPriority.HIGH),
        ]
        result = filter_entity_fields(_character(), configs, 1000)
        assert result.included_fields == ["name", "role", "flaws"]

    def test_missing_values_skipped(self):
        configs = [FieldConfig("archetype", FieldPriority.HIGH)]
        result = filter_entity_fields(_character(), configs, 1000)
        assert result.fields == {}
        assert result.token_count == 0

    def test_medium_field_dropped_not_truncated(self):
        configs = [
            FieldConfig("name", FieldPriority.HIGH),
            FieldConfig("backstory_prose", FieldPriority.MEDIUM),
        ]
        result = filter_entity_fields(_character(), configs, 100)
        assert "backstory_prose" not in result.fields
        assert result.truncated_fields == []

    def test_high_field_truncated_when_room_remains(self):
        configs = [FieldConfig("backstory_prose", FieldPriority.HIGH)]
        result = filter_entity_fields(_character(), configs, 100)
        assert "backstory_prose" in result.fields
        assert result.truncated_fields == ["backstory_prose"]
        assert result.fields["backstory_prose"].endswith("[...]")

    def test_high_field_skipped_below_floor(self):
        configs = [FieldConfig("backstory_prose", FieldPriority.HIGH)]
        result = filter_entity_fields(
            _character(), configs, TRUNCATION_FLOOR_TOKENS - 1
        )
        assert result.fields == {}

    def test_nested_path(self):
        configs = [
            FieldConfig(
                "sample_dialogue",
                FieldPriority.HIGH,
                path=("voice_profile", "sample_dialogue"),
            )
        ]
        result = filter_entity_fields(_character(), configs, 1000)
        assert result.fields["sample_dialogue"] == ["Stand fast.", "Not today."]

    def test_zero_budget(self):
        configs = [FieldConfig("name", FieldPriority.HIGH)]
        assert filter_entity_fields(_character(), configs, 0).fields == {}

    @pytest.mark.parametrize("budget", [10, 50, 60, 80, 120, 200, 400, 2000])
    @pytest.mark.parametrize("mode", list(ChatMode))
    def test_budget_overshoot_is_bounded(self, mode, budget):
        configs = get_mode_context_config(mode).character_fields
        result = filter_entity_fields(_character(), configs, budget)
        measured = sum(value_tokens(v) for v in result.fields.values())
        assert measured == result.token_count
        assert result.token_count <= budget + TRUNCATION_FLOOR_TOKENS

    def test_high_field_truncated_at_exact_floor(self):
        configs = [FieldConfig("backstory_prose", FieldPriority.HIGH)]
        result = filter_entity_fields(
            _character(), configs, TRUNCATION_FLOOR_TOKENS
        )
        assert result.truncated_fields == ["backstory_prose"]
        assert result.token_count <= 2 * TRUNCATION_FLOOR_TOKENS

    @pytest.mark.parametrize("budget", [60, 200, 1000])
    def test_budget_overshoot_is_bounded_for_dialogue(self, budget):
        prose = '"Stand fast," she said.\n"Not today."\n' * 400
        configs = [FieldConfig("personality_prose", FieldPriority.HIGH)]
        result = filter_entity_fields(
            _character(personality_prose=prose), configs, budget
        )
        assert result.truncated_fields == ["personality_prose"]
        assert result.token_count == value_tokens(result.fields["personality_prose"])
        assert result.token_count <= budget + TRUNCATION_FLOOR_TOKENS

    @pytest.mark.parametrize("mode", list(ChatMode))
    def test_only_high_priority_fields_truncated(self, mode):
        configs = get_mode_context_config(mode).character_fields
        priorities = {c.field: c.priority for c in configs}
        result = filter_entity_fields(_character(), configs, 120)
        for name in result.truncated_fields:
            assert priorities[name] is FieldPriority.HIGH


class TestTruncation:
    def test_short_string_untouched(self):
        assert truncate_string("short", 10) == "short"

    def test_sentence_boundary(self):
        text = (
            "First sentence here. Second sentence is here. "
            "Third one goes on and on and on."
        )
        assert truncate_string(text, 12) == (
            "First sentence here. Second sentence is here. [...]"
        )

    def test_word_boundary(self):
        text = "word " * 30
        assert truncate_string(text, 10) == (
            "word word word word word word word word..."
        )

    def test_escaped_text_cut_on_serialized_length(self):
        text = 'He said "no".\n' * 50
        truncated = truncate_string(text, 20)
        assert truncated.endswith("...")
        assert value_tokens(truncated) <= 20

    def test_hard_cut(self):
        assert truncate_string("x" * 100, 5) == "x" * 20 + "..."

    def test_list_keeps_leading_items(self):
        items = ["a" * 40, "b" * 40, "c" * 40]
        assert truncate_field_value(items, 25) == ["a" * 40, "b" * 40]

    def test_list_first_item_too_large(self):
        truncated = truncate_field_value(["x" * 400], 10)
        assert len(truncated) == 1
        assert truncated[0].endswith("...")

    def test_dict_keeps_priority_keys_first(self):
        value = {"extra": "e" * 200, "name": "Ember Guild", "description": "d" * 40}
        truncated = truncate_field_value(value, 25)
        assert list(truncated) == ["name", "description"]

    def test_number_cannot_be_truncated(self):
        assert truncate_field_value(42, 10) is None


class TestFormatting:
    def test_label(self):
        assert format_field_label("core_concept") == "Core Concept"
        assert format_field_label("name") == "Name"

    def test_entity_context(self):
        configs = [
            FieldConfig("name", FieldPriority.HIGH),
            FieldConfig("flaws", FieldPriority.HIGH),
            FieldConfig("voice_profile", FieldPriority.HIGH),
        ]
        text = format_entity_context(
            filter_entity_fields(_character(), configs, 1000), show_debug=True
        )
        assert text.startswith("### 👤 CHARACTER: Elara (#ELARA_902)\n")
        assert "**Name:** Elara" in text
        assert "**Flaws:**\n- pride\n- temper" in text
        assert "**Voice Profile:**\n```json" in text
        assert "_Debug: 3 fields included" in text

    def test_truncated_marker(self):
        configs = [FieldConfig("backstory_prose", FieldPriority.HIGH)]
        text = format_entity_context(filter_entity_fields(_character(), configs, 60))
        assert "_(truncated)_" in text


def test_extract_field_value_missing_parent():
    config = FieldConfig(
        "sample_dialogue", "high", path=("voice_profile", "sample_dialogue")
    )
    assert extract_field_value({"voice_profile": None}, config) is None
