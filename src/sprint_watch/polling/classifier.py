"""
"Testing required" classification for the polling system.

A story is testing-required when its ready flag is true and its schedule
state normalizes to ``in-progress``.
"""

from dataclasses import dataclass, field

from ..fields import normalize_schedule_state
from ..models import Story, StoryRef

IN_PROGRESS = "in-progress"


def is_testing_required(story: Story) -> bool:
    if story.ready is not True:
        return False
    return normalize_schedule_state(story.schedule_state) == IN_PROGRESS


def classify(stories: list[Story]) -> list[StoryRef]:
    """Testing-required refs for the live stories, one per story id."""
    refs: dict[int, StoryRef] = {}
    for story in stories:
        if is_testing_required(story):
            refs[story.story_id] = StoryRef(story.story_id, story.formatted_id)
    return list(refs.values())


@dataclass
class ClassificationDiff:
    """Result of comparing the stored classification set with the live one."""

    current: list[StoryRef]
    added: list[StoryRef] = field(default_factory=list)
    removed: list[StoryRef] = field(default_factory=list)
    size_changed: bool = False

    @property
    def should_notify(self) -> bool:
        """
        Notify only when the set size changed and there is something to say.

        A same-size swap (one story enters while another leaves) does not
        change the size and therefore does not notify.
        """
        return self.size_changed and bool(self.added or self.removed)


def diff_classification(
    previous: list[StoryRef], stories: list[Story]
) -> ClassificationDiff:
    """
    Compare the stored classification set with the live stories.

    Args:
        previous: Classification set persisted by the last successful poll
        stories: Live stories from this poll

    Returns:
        The new set (which always replaces the stored one) plus membership
        differences by story id
    """
    current = classify(stories)
    previous_by_id = {ref.story_id: ref for ref in previous}
    current_ids = {ref.story_id for ref in current}

    return ClassificationDiff(
        current=current,
        added=[ref for ref in current if ref.story_id not in previous_by_id],
        removed=[
            ref for ref in previous_by_id.values() if ref.story_id not in current_ids
        ],
        size_changed=len(current) != len(previous_by_id),
    )
