"""Tests for per-mode context configuration."""

import pytest

from contextforge.context.modes import (
    MODE_CONTEXT_CONFIGS,
    ChatMode,
    FieldAccessor,
    FieldConfig,
    FieldPriority,
    calculate_entity_budgets,
    get_fields_by_priority,
    get_mode_context_config,
)


def test_every_mode_is_configured():
    assert set(MODE_CONTEXT_CONFIGS) == set(ChatMode)
    for mode, config in MODE_CONTEXT_CONFIGS.items():
        assert config.mode is mode
        assert config.format_hint in ("minimal", "standard", "detailed")


def test_lookup_by_string():
    assert get_mode_context_config("chat_with").mode is ChatMode.CHAT_WITH


def test_unknown_mode():
    with pytest.raises(ValueError):
        get_mode_context_config("dance")


class TestCalculateEntityBudgets:
    def test_chat_with_split(self):
        budgets = calculate_entity_budgets(ChatMode.CHAT_WITH, 3000)
        assert (budgets.character, budgets.world, budgets.project) == (2400, 450, 150)

    def test_chat_percentages_do_not_sum_to_100(self):
        budgets = calculate_entity_budgets("chat", 3000)
        assert (budgets.character, budgets.world, budgets.project) == (600, 600, 600)

    def test_floors(self):
        budgets = calculate_entity_budgets("lore", 101)
        assert budgets.character == 15
        assert budgets.world == 75
        assert budgets.project == 10

    @pytest.mark.parametrize("mode", list(ChatMode))
    def test_linear(self, mode):
        single = calculate_entity_budgets(mode, 1000)
        double = calculate_entity_budgets(mode, 2000)
        assert double.character == 2 * single.character
        assert double.world == 2 * single.world
        assert double.project == 2 * single.project


class TestFieldConfig:
    def test_direct_accessor(self):
        config = FieldConfig("motivations", FieldPriority.HIGH)
        assert config.accessor is FieldAccessor.DIRECT
        assert config.source_key == "motivations"

    def test_single_segment_path(self):
        config = FieldConfig("voice", "high", path=("voice_profile",))
        assert config.accessor is FieldAccessor.DIRECT
        assert config.source_key == "voice_profile"
        assert config.priority is FieldPriority.HIGH

    def test_nested_accessor(self):
        config = FieldConfig(
            "sample_dialogue", "medium", path=("voice_profile", "sample_dialogue")
        )
        assert config.accessor is FieldAccessor.NESTED

    def test_too_deep(self):
        with pytest.raises(ValueError, match="at most one level"):
            FieldConfig("x", "low", path=("a", "b", "c"))


def test_chat_with_caps_motivations():
    config = get_mode_context_config(ChatMode.CHAT_WITH)
    motivations = [f for f in config.character_fields if f.field == "motivations"]
    assert motivations[0].priority is FieldPriority.HIGH
    assert motivations[0].max_items == 5


def test_get_fields_by_priority():
    fields = get_mode_context_config(ChatMode.CHAT).character_fields
    assert [f.field for f in get_fields_by_priority(fields, "high")] == [
        "name",
        "role",
        "core_concept",
    ]
    assert get_fields_by_priority(fields, FieldPriority.LOW) == []


def test_priority_rank_orders_high_first():
    ranked = sorted(FieldPriority, key=lambda p: p.rank)
    assert ranked == [FieldPriority.HIGH, FieldPriority.MEDIUM, FieldPriority.LOW]
