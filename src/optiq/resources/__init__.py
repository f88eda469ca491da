"""Resource accessors, cached reads and mutation strategies per entity.

Each submodule owns one entity's key factory; import the submodule
rather than its names, since ``toggle_like`` and friends repeat.
"""

from optiq.resources import (
    bookmarks,
    comments,
    course_progress,
    enrollments,
    inquiries,
    lecture_progress,
    lectures,
    notifications,
    posts,
    reviews,
    studies,
)
from optiq.resources.common import LikeStatus

__all__ = [
    "LikeStatus",
    "bookmarks",
    "comments",
    "course_progress",
    "enrollments",
    "inquiries",
    "lecture_progress",
    "lectures",
    "notifications",
    "posts",
    "reviews",
    "studies",
]
