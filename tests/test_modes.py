"""Tests for expert_panel/modes.py: mode selection and trigger classification."""

import pytest

from expert_panel.errors import InvalidRequest
from expert_panel.models import AUTO, CODE_MUTATION, CONSENSUS, PLANNING_DISCUSSION, SINGULAR
from expert_panel.modes import EventClassifier, TriggerEvent, select_mode


@pytest.mark.parametrize("trigger", [None, CODE_MUTATION, PLANNING_DISCUSSION])
def test_explicit_modes_pass_through(trigger):
    assert select_mode(CONSENSUS, trigger) == CONSENSUS
    assert select_mode(SINGULAR, trigger) == SINGULAR


def test_auto_follows_trigger():
    assert select_mode(AUTO, CODE_MUTATION) == CONSENSUS
    assert select_mode(AUTO, PLANNING_DISCUSSION) == SINGULAR


def test_auto_without_trigger_is_consensus():
    assert select_mode(AUTO) == CONSENSUS


@pytest.mark.parametrize("mode", ["", "Consensus", "sometimes"])
def test_unknown_mode_rejected(mode):
    with pytest.raises(InvalidRequest):
        select_mode(mode, CODE_MUTATION)


@pytest.mark.parametrize("kind", ["file-save", "commit", "REFACTOR", "code-edit"])
def test_code_events(kind):
    assert EventClassifier().classify(TriggerEvent(kind)) == CODE_MUTATION


@pytest.mark.parametrize("kind", ["issue-created", "discussion", "question"])
def test_planning_events(kind):
    assert EventClassifier().classify(TriggerEvent(kind)) == PLANNING_DISCUSSION


def test_unknown_event_is_planning():
    assert EventClassifier().classify(TriggerEvent("calendar-invite")) == PLANNING_DISCUSSION


def test_trigger_kind_passes_through():
    classifier = EventClassifier()
    assert classifier.classify(TriggerEvent(CODE_MUTATION)) == CODE_MUTATION
    assert classifier.classify(TriggerEvent(PLANNING_DISCUSSION)) == PLANNING_DISCUSSION


def test_custom_tables():
    classifier = EventClassifier(code_mutation=["merge"], planning_discussion=["standup"])
    assert classifier.classify(TriggerEvent("merge", {"branch": "main"})) == CODE_MUTATION
    assert classifier.classify(TriggerEvent("file-save")) == PLANNING_DISCUSSION


def test_overlapping_tables_rejected():
    with pytest.raises(ValueError, match="commit"):
        EventClassifier(code_mutation=["commit"], planning_discussion=["commit"])
