"""Report generation for monthly reconciliation summaries."""

import csv
import io
import json
from datetime import datetime

from ..notifications.messages import format_amount
from .models import SUMMARY_BUCKETS, MonthlySummary


class ReportGenerator:
    """Generator for monthly summaries in various formats."""

    def __init__(self, summary: MonthlySummary):
        """Initialize the report generator.

        Args:
            summary: The monthly summary to generate output from.
        """
        self.summary = summary

    def to_json(self, include_cohorts: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the summary.

        Args:
            include_cohorts: If False, only the overall totals are included.
            indent: JSON indentation level.

        Returns:
            JSON string representation of the summary.
        """
        data = self.summary.to_dict()
        if not include_cohorts:
            data.pop("cohorts")

        def json_serializer(obj):
            if isinstance(obj, datetime):
                return obj.isoformat()
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        return json.dumps(data, indent=indent, default=json_serializer)

    def to_csv(self) -> str:
        """Generate CSV with one row per cohort and currency.

        Returns:
            CSV string; amounts are in minor units.
        """
        output = io.StringIO()
        writer = csv.writer(output)
        header = ["cohort_id", "currency"]
        for name in SUMMARY_BUCKETS:
            header.extend([f"{name}_count", f"{name}_amount"])
        header.append("collection_rate")
        writer.writerow(header)

        for cohort in self.summary.cohorts:
            row = [cohort.cohort_id, cohort.currency]
            for name in SUMMARY_BUCKETS:
                bucket = cohort.bucket(name)
                row.extend([bucket.count, bucket.amount])
            row.append(cohort.collection_rate)
            writer.writerow(row)

        return output.getvalue()

    def to_summary_text(self) -> str:
        """Generate a human-readable text summary.

        Returns:
            Formatted text with the overall totals per currency.
        """
        summary = self.summary
        lines = [
            "=" * 60,
            "MONTHLY RECONCILIATION SUMMARY",
            "=" * 60,
            f"Run ID: {summary.run_id}",
            f"Period: {summary.period_start:%Y-%m-%d} to {summary.period_end:%Y-%m-%d} (exclusive)",
            f"Cohorts: {len({c.cohort_id for c in summary.cohorts})}",
            "",
        ]

        if not summary.totals:
            lines.append("No payments were due in this period.")
        for currency, buckets in sorted(summary.totals.items()):
            lines.append(f"Totals ({currency}):")
            for name in SUMMARY_BUCKETS:
                totals = buckets[name]
                lines.append(
                    f"  {name.capitalize()}: {totals.count} payment(s), "
                    f"{format_amount(totals.amount, currency)}"
                )
            lines.append("")

        if summary.failed_cohorts:
            lines.extend([
                "Failed cohorts:",
                f"  {', '.join(summary.failed_cohorts)}",
                "",
            ])

        lines.append(f"Generated At: {summary.generated_at.isoformat()}")
        lines.append("=" * 60)

        return "\n".join(lines)

    def to_detailed_text(self) -> str:
        """Generate the text summary followed by one block per cohort."""
        lines = [self.to_summary_text(), ""]

        if self.summary.cohorts:
            lines.extend([
                "COHORTS",
                "-" * 40,
            ])
            for cohort in self.summary.cohorts:
                lines.append(f"\nCohort {cohort.cohort_id} ({cohort.currency})")
                for name in SUMMARY_BUCKETS:
                    bucket = cohort.bucket(name)
                    lines.append(
                        f"  {name.capitalize()}: {bucket.count}, "
                        f"{format_amount(bucket.amount, cohort.currency)}"
                    )
                lines.append(f"  Collection Rate: {cohort.collection_rate}")
            lines.append("")

        return "\n".join(lines)

    def render(self, format: str = "json") -> str:
        """Render in one of ``json``, ``csv``, ``text`` or ``detailed_text``."""
        if format == "json":
            return self.to_json()
        elif format == "csv":
            return self.to_csv()
        elif format == "text":
            return self.to_summary_text()
        elif format == "detailed_text":
            return self.to_detailed_text()
        else:
            raise ValueError(f"Unsupported report format: {format}")
