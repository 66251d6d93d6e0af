import pytest

from flask_app.policy.patterns import compile_pattern

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "pattern,action,expected",
    [
        ("*", "crm.deal.update", True),
        ("*", "anything", True),
        ("crm.*", "crm.deal", True),
        ("crm.*", "crm.deal.stage.update", True),
        ("crm.*", "crm", False),
        ("crm.*", "ecom.order", False),
        ("crm.*.update", "crm.deal.update", True),
        ("crm.*.update", "crm.deal.stage.update", False),
        ("crm.deal.stage.update", "crm.deal.stage.update", True),
        ("crm.deal.stage.update", "crm.deal.stage", False),
        ("crm.deal", "crm.deals", False),
    ],
)
def test_pattern_matching(pattern, action, expected):
    assert compile_pattern(pattern).matches(action) is expected


def test_empty_action_never_matches():
    assert compile_pattern("*").matches("") is False


@pytest.mark.parametrize("pattern", ["", "   ", "crm..deal", ".crm", "crm."])
def test_invalid_patterns_are_rejected(pattern):
    with pytest.raises(ValueError):
        compile_pattern(pattern)


def test_pattern_is_trimmed():
    compiled = compile_pattern("  crm.* ")
    assert compiled.source == "crm.*"
    assert compiled.segments == ("crm", "*")
