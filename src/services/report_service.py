import logging
import threading
import xlsxwriter
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from services.azure_devops_service import AzureDevOpsError, AzureDevOpsService
from services.models import EpicFailure, EpicRecord, EpicReport, ReportRow, WorkItemId

logger = logging.getLogger(__name__)

NO_EPICS_MESSAGE = "No Epics found in this iteration."

# ================================================================================
# COLUMN CONFIGURATION SECTION
# ================================================================================

REPORT_COLUMNS = [
    {'field': 'epic_id', 'header': 'Epic ID', 'width': 10},
    {'field': 'epic_state', 'header': 'Epic State', 'width': 15},
    {'field': 'title', 'header': 'Title', 'width': 50},
    {'field': 'effort', 'header': 'Effort', 'width': 12},
    {'field': 'total_story_points', 'header': 'Story Points', 'width': 14},
    {'field': 'difference', 'header': 'Effort - Story Points', 'width': 22},
]

NUMERIC_FIELDS = {'effort', 'total_story_points', 'difference'}

# ================================================================================
# END COLUMN CONFIGURATION SECTION
# ================================================================================

RowCallback = Callable[[ReportRow], None]
ErrorCallback = Callable[[EpicFailure], None]


def build_report_row(epic: EpicRecord, total_story_points: float) -> ReportRow:
    """Combine an Epic with the story points of its children"""
    return ReportRow(
        epic_id=epic.id,
        epic_state=epic.state,
        title=epic.title,
        effort=epic.effort,
        total_story_points=total_story_points,
        difference=epic.effort - total_story_points,
    )


def report_rows_to_dict(rows: Sequence[ReportRow]) -> List[Dict[str, Any]]:
    """Convert report rows to JSON-serializable dicts, keyed by column field"""
    return [
        {column['field']: getattr(row, column['field']) for column in REPORT_COLUMNS}
        for row in rows
    ]


def _is_cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


class EpicReportPipeline:
    """
    Locate the Epics of an iteration and reconcile each one's Effort against the
    story points of its children.

    Epics are processed one at a time unless max_workers > 1, in which case a
    bounded thread pool fetches them concurrently. Either way rows are emitted in
    the order the WIQL query returned the Epics.
    """

    def __init__(self, service: AzureDevOpsService, max_workers: int = 1):
        self.service = service
        self.max_workers = max(1, max_workers)

    def process_epic(self, project: str, epic_id: WorkItemId) -> ReportRow:
        epic = self.service.fetch_epic(project, epic_id)
        total_story_points = self.service.sum_child_story_points(project, epic.relations)
        logger.debug(f"Epic {epic_id}: effort={epic.effort}, story points={total_story_points}")
        return build_report_row(epic, total_story_points)

    def run(self, project: str, iteration: str,
            on_row: Optional[RowCallback] = None,
            on_error: Optional[ErrorCallback] = None,
            cancel_event: Optional[threading.Event] = None) -> EpicReport:
        """
        Run one fetch cycle

        Args:
            project: Selected project name
            iteration: Selected (collapsed) iteration path
            on_row: Called with each row as soon as its Epic is done
            on_error: Called with each Epic that failed
            cancel_event: When set, no further Epics are started

        Returns:
            EpicReport with the rows and failures of this cycle

        Raises:
            ValueError: If project or iteration is empty
            AzureDevOpsError: If the Epic query itself fails
        """
        if not project or not iteration:
            raise ValueError("Please select a product and iteration.")

        report = EpicReport(project=project, iteration=iteration)

        epic_ids = self.service.find_epic_ids(project, iteration)
        if not epic_ids:
            logger.info(f"No Epics found in {iteration}")
            report.message = NO_EPICS_MESSAGE
            return report

        logger.info(f"Processing {len(epic_ids)} Epics from {iteration}...")

        processed = 0
        for epic_id, outcome in self._outcomes(project, epic_ids, cancel_event):
            processed += 1
            try:
                row = outcome()
            except AzureDevOpsError as e:
                logger.error(f"Error fetching Epic details for {epic_id}: {str(e)}")
                failure = EpicFailure(epic_id=epic_id, error=e)
                report.failures.append(failure)
                if on_error:
                    on_error(failure)
                continue

            report.rows.append(row)
            if on_row:
                on_row(row)

        if processed < len(epic_ids):
            logger.warning(f"Report cancelled after {processed} of {len(epic_ids)} Epics")
            report.cancelled = True

        logger.info(f"Report complete: {len(report.rows)} rows, {len(report.failures)} failures")
        return report

    def _outcomes(self, project: str, epic_ids: List[WorkItemId],
                  cancel_event: Optional[threading.Event]) -> Iterator[Tuple[WorkItemId, Callable[[], ReportRow]]]:
        if self.max_workers == 1:
            for epic_id in epic_ids:
                if _is_cancelled(cancel_event):
                    return
                yield epic_id, lambda epic_id=epic_id: self.process_epic(project, epic_id)
            return

        # At most max_workers Epics are in flight; nothing new is submitted once cancelled
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            in_flight = deque()
            next_index = 0
            while True:
                while (next_index < len(epic_ids) and len(in_flight) < self.max_workers
                       and not _is_cancelled(cancel_event)):
                    epic_id = epic_ids[next_index]
                    next_index += 1
                    in_flight.append((epic_id, executor.submit(self.process_epic, project, epic_id)))

                if not in_flight:
                    return
                if _is_cancelled(cancel_event):
                    for _, pending in in_flight:
                        pending.cancel()
                    return

                epic_id, future = in_flight.popleft()
                yield epic_id, future.result


class ReportService:
    def __init__(self):
        """Initialize the report service"""
        pass

    def build_excel_workbook(self, rows: Sequence[ReportRow], output_path: str,
                             worksheet_name: str = "Epics") -> None:
        """
        Build an Excel workbook with one line per report row

        Args:
            rows: Report rows in display order
            output_path: Path where the Excel file will be saved
            worksheet_name: Name of the single worksheet
        """
        try:
            workbook = xlsxwriter.Workbook(output_path)

            header_format = workbook.add_format({
                'bold': True,
                'bg_color': '#D0D0D0',
                'border': 1
            })
            cell_format = workbook.add_format({
                'border': 1
            })
            number_format = workbook.add_format({
                'border': 1,
                'num_format': '0.00'
            })

            logger.info(f"Building {worksheet_name} sheet with {len(rows)} rows")
            worksheet = workbook.add_worksheet(worksheet_name)

            for col_idx, col_config in enumerate(REPORT_COLUMNS):
                worksheet.set_column(col_idx, col_idx, col_config['width'])
                worksheet.write(0, col_idx, col_config['header'], header_format)

            for row_idx, row in enumerate(rows, start=1):
                for col_idx, col_config in enumerate(REPORT_COLUMNS):
                    field_name = col_config['field']
                    value = getattr(row, field_name)
                    if field_name in NUMERIC_FIELDS:
                        worksheet.write_number(row_idx, col_idx, value, number_format)
                    else:
                        worksheet.write(row_idx, col_idx, value, cell_format)

            workbook.close()
            logger.info(f"Excel report saved to {output_path}")

        except Exception as e:
            logger.exception(f"Error building Excel workbook: {str(e)}")
            raise
