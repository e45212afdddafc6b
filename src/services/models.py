from dataclasses import dataclass, field
from typing import List, Optional, Union

HIERARCHY_FORWARD = "System.LinkTypes.Hierarchy-Forward"

WorkItemId = Union[int, str]


@dataclass(frozen=True)
class Relation:
    """A link from a work item to another work item"""
    rel: str
    url: str

    @property
    def is_hierarchy_forward(self) -> bool:
        return self.rel == HIERARCHY_FORWARD

    @property
    def child_id(self) -> str:
        """Identifier of the linked work item, taken from the last URL segment"""
        return self.url.rstrip("/").split("/")[-1]


@dataclass(frozen=True)
class EpicRecord:
    id: WorkItemId
    state: str
    title: str
    effort: float
    relations: List[Relation] = field(default_factory=list)


@dataclass(frozen=True)
class ReportRow:
    epic_id: WorkItemId
    epic_state: str
    title: str
    effort: float
    total_story_points: float
    difference: float

    def as_list(self) -> list:
        return [self.epic_id, self.epic_state, self.title,
                self.effort, self.total_story_points, self.difference]


@dataclass(frozen=True)
class EpicFailure:
    """An Epic that could not be processed, with the error that stopped it"""
    epic_id: WorkItemId
    error: Exception

    @property
    def message(self) -> str:
        return f"Error fetching Epic details: {self.error}"


@dataclass
class EpicReport:
    """Outcome of one fetch cycle"""
    project: str
    iteration: str
    rows: List[ReportRow] = field(default_factory=list)
    failures: List[EpicFailure] = field(default_factory=list)
    message: Optional[str] = None
    cancelled: bool = False
