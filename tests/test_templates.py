import pytest

from jobwarden.errors import TemplateNotFoundError
from jobwarden.jobs.models import parse_action, parse_schedule
from jobwarden.jobs.templates import TEMPLATES, get_template, get_templates


def test_builtin_templates():
    assert {t.id for t in TEMPLATES} == {
        "daily-summary",
        "weekly-review",
        "task-cleanup",
        "integration-sync",
        "reminder-digest",
    }


@pytest.mark.parametrize("template", TEMPLATES, ids=lambda t: t.id)
def test_template_blueprints_are_valid(template):
    parse_schedule(data=template.schedule)
    parse_action(data=template.action)


def test_get_templates_sorted_by_popularity():
    popularity = [t.popularity for t in get_templates()]
    assert popularity == sorted(popularity, reverse=True)
    assert get_templates()[0].id == "reminder-digest"


def test_get_templates_by_category():
    ids = [t.id for t in get_templates(category="notifications")]
    assert ids == ["reminder-digest", "daily-summary"]
    assert get_templates(category="nonexistent") == []


def test_get_template():
    template = get_template("weekly-review")
    assert template.schedule["days_of_week"] == [5]
    assert template.action["parameters"]["reportType"] == "weekly_review"


def test_get_unknown_template():
    with pytest.raises(TemplateNotFoundError) as exc_info:
        get_template("monthly-party")
    assert exc_info.value.code == "TEMPLATE_NOT_FOUND"
