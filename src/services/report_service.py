import logging
import xlsxwriter
from typing import Dict, List, Any

from services.cost_rollup_service import RollupPlan
from services.projection_service import ProjectionResult
from services.update_service import format_field_value

logger = logging.getLogger(__name__)

SCHEDULING_PREFIX = "Microsoft.VSTS.Scheduling."

# ================================================================================
# COLUMN CONFIGURATION SECTION
# ================================================================================

# Old/New value columns for each rollup field are inserted after 'id'
PLAN_COLUMNS = [
    {'field': 'id', 'header': 'ID', 'width': 10},
    {'field': 'is_update_required', 'header': 'Update Required', 'width': 15},
    {'field': 'work_item_type', 'header': 'Type', 'width': 15},
    {'field': 'state', 'header': 'State', 'width': 15},
    {'field': 'title', 'header': 'Title', 'width': 50},
]

FIELD_COLUMN_WIDTH = 18

# ================================================================================
# END COLUMN CONFIGURATION SECTION
# ================================================================================


def shorten_field_name(field_name: str) -> str:
    return field_name.replace(SCHEDULING_PREFIX, "")


def _plain(value: Any) -> str:
    # Blank fields print as 'undefined' to tell them apart from explicit zeroes
    if value is None:
        return "undefined"
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return format_field_value(value)
    return str(value)


def format_plan_lines(plan: RollupPlan, verbose: bool = False) -> List[str]:
    """
    Render the update plan as tab separated lines

    Rows not needing an update are only shown when verbose is set.
    """
    short_names = [shorten_field_name(f) for f in plan.rollup_fields]
    header = (["id"] + [f"{name}(Old)" for name in short_names] + [f"{name}(New)" for name in short_names]
              + ["isUpdateRequired", "workItemType", "State", "Title"])
    lines = ["\t".join(header)]

    for row in plan.rows(verbose):
        values = ([str(row["id"])]
                  + [_plain(row["old"][f]) for f in plan.rollup_fields]
                  + [_plain(row["new"][f]) for f in plan.rollup_fields]
                  + [str(row["is_update_required"]), row["work_item_type"], row["state"], f'"{row["title"]}"'])
        lines.append("\t".join(values))
    return lines


def plan_to_json(plan: RollupPlan, verbose: bool = False) -> List[Dict[str, Any]]:
    """Plan rows keyed by shortened field names, for the HTTP API"""
    rows = []
    for row in plan.rows(verbose):
        rows.append({
            "id": row["id"],
            "old": {shorten_field_name(f): v for f, v in row["old"].items()},
            "new": {shorten_field_name(f): v for f, v in row["new"].items()},
            "is_update_required": row["is_update_required"],
            "work_item_type": row["work_item_type"],
            "state": row["state"],
            "title": row["title"],
        })
    return rows


def build_plan_workbook(plan: RollupPlan, output_path: str, verbose: bool = False) -> None:
    """
    Build an Excel workbook with the update plan

    Args:
        plan: The computed rollup plan
        output_path: Path where the Excel file will be saved
        verbose: Include items that do not need an update
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
        changed_format = workbook.add_format({
            'border': 1,
            'bg_color': '#FFF2CC'
        })

        worksheet = workbook.add_worksheet("Update Plan")

        short_names = [shorten_field_name(f) for f in plan.rollup_fields]
        columns = ([PLAN_COLUMNS[0]]
                   + [{'field': ('old', f), 'header': f"{name} (Old)", 'width': FIELD_COLUMN_WIDTH}
                      for f, name in zip(plan.rollup_fields, short_names)]
                   + [{'field': ('new', f), 'header': f"{name} (New)", 'width': FIELD_COLUMN_WIDTH}
                      for f, name in zip(plan.rollup_fields, short_names)]
                   + PLAN_COLUMNS[1:])

        for col_idx, col_config in enumerate(columns):
            worksheet.set_column(col_idx, col_idx, col_config['width'])
            worksheet.write(0, col_idx, col_config['header'], header_format)

        rows = plan.rows(verbose)
        for row_idx, row in enumerate(rows, start=1):
            row_format = changed_format if row["is_update_required"] else cell_format
            for col_idx, col_config in enumerate(columns):
                field_name = col_config['field']
                if isinstance(field_name, tuple):
                    value = row[field_name[0]][field_name[1]]
                else:
                    value = row.get(field_name, "")
                if value is None:
                    worksheet.write_blank(row_idx, col_idx, None, row_format)
                else:
                    worksheet.write(row_idx, col_idx, value, row_format)

        summary_row = len(rows) + 2
        worksheet.write(summary_row, 0, "TOTAL", cell_format)
        worksheet.write(summary_row, 1, f"{len(plan.updates_required())} of {len(plan.snapshots)} "
                                        f"work items need an update", cell_format)

        workbook.close()
        logger.info(f"Excel update plan saved to {output_path}")

    except Exception as e:
        logger.exception(f"Error building Excel workbook: {str(e)}")
        raise


def format_projection_lines(result: ProjectionResult) -> List[str]:
    """Render the projection table, cut lines and slicer summaries"""
    lines = ["Id\tRemainingDaysCumulative\tRemainingWork\tState\tInvestment\tCommittedTargetted\tRelease\tTitle"]

    for row in result.rows:
        if row.cutline_before == "capacity":
            lines.append(f"--------------Cutline: Capacity: {result.capacity}, "
                         f"Cost: {result.capacity_cutline_cost}--------------")
        lines.append(f"{row.id}\t{row.cumulative_remaining}\t{row.remaining}\t{row.state}\t"
                     f"{row.investment_area}\t{row.commitment}\t{row.release_type}\t{row.title}")
        if row.cutline_after == "user":
            lines.append("--------------user defined cutline--------------")

    for slicer in result.slicers:
        summary = slicer.summary()
        lines.append("")
        lines.append(f"------------- {slicer.name} -------------")
        lines.append("Days:")
        for bucket in summary:
            lines.append(f"{bucket['key']},\t{bucket['value']},\t{bucket['value_percent']:.0f}%")
        lines.append("")
        lines.append("Count:")
        for bucket in summary:
            lines.append(f"{bucket['key']},\t{bucket['count']},\t{bucket['count_percent']:.0f}%")

    return lines


def projection_to_json(result: ProjectionResult) -> Dict[str, Any]:
    return {
        "capacity": result.capacity,
        "capacity_cutline_cost": result.capacity_cutline_cost,
        "rows": [
            {
                "id": row.id,
                "cumulative_remaining": row.cumulative_remaining,
                "remaining": row.remaining,
                "state": row.state,
                "investment_area": row.investment_area,
                "commitment": row.commitment,
                "release_type": row.release_type,
                "title": row.title,
                "cutline_before": row.cutline_before,
                "cutline_after": row.cutline_after,
            }
            for row in result.rows
        ],
        "slicers": {slicer.name: slicer.summary() for slicer in result.slicers},
    }
