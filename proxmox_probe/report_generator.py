"""Report generator - produces JSON and Markdown preflight reports."""
import dataclasses
import datetime
import json
from collections import defaultdict
from typing import Optional

from .models import EnvironmentInfo, Issue, Result, Severity, UnprivilegedContainerInfo
from .unprivileged import describe_privilege_context


class ReportGenerator:
    def __init__(self, result: Result, env_info: Optional[EnvironmentInfo] = None,
                 container_info: Optional[UnprivilegedContainerInfo] = None):
        self.result = result
        self.env_info = env_info or EnvironmentInfo()
        self.container_info = container_info

    def _severity_order(self, issue: Issue) -> int:
        order = {Severity.ERROR: 0, Severity.WARNING: 1}
        return order.get(issue.severity, 2)

    def _group_by_severity(self) -> dict:
        """Group issues by severity, errors first, keeping check order inside a group."""
        groups = defaultdict(list)
        for issue in sorted(self.result.issues, key=self._severity_order):
            groups[issue.severity.value].append(issue)
        return dict(groups)

    def _privilege_context(self) -> dict:
        if self.container_info is None:
            return {}
        mode, note = describe_privilege_context(self.container_info)
        context = dataclasses.asdict(self.container_info)
        context["shifted"] = self.container_info.shifted
        context["mode"] = mode
        context["note"] = note
        return context

    def build_report(self) -> dict:
        return {
            "report_metadata": {
                "generated_at": datetime.datetime.now().isoformat(),
                "checks_started_at": self.result.started_at,
                "total_issues": self.result.total_issues,
            },
            "summary": {
                "errors": self.result.error_count,
                "warnings": self.result.warning_count,
                "blocking": self.result.has_errors(),
            },
            "issues": [i.to_dict() for i in self.result.issues],
            "environment": self.env_info.to_dict(),
            "privilege_context": self._privilege_context(),
        }

    def generate_json(self, output_path: str):
        with open(output_path, "w") as f:
            json.dump(self.build_report(), f, indent=2)

    def generate_markdown(self, output_path: str):
        with open(output_path, "w") as f:
            f.write(self.render_markdown())

    def render_markdown(self) -> str:
        now = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        sev_badge = {
            "error":   "🔴 ERROR",
            "warning": "🟡 WARNING",
        }

        lines = [
            "# Preflight Security Report",
            "",
            "## Host Information",
            "",
            "| Field | Value |",
            "|-------|-------|",
            f"| **Environment** | {self.env_info.type.label} |",
            f"| **Version** | `{self.env_info.version}` |",
            f"| **Report Date** | {now} |",
            f"| **Checks Started** | {self.result.started_at} |",
        ]
        context = self._privilege_context()
        if context:
            runtime = context["container_runtime"] or "none"
            lines.append(f"| **Privilege Context** | {context['mode']} (runtime={runtime}) |")
            if context["details"]:
                lines.append(f"| **Evidence** | `{context['details']}` |")

        lines.extend([
            "",
            "---",
            "",
            "## Summary",
            "",
            "| Severity | Count |",
            "|----------|-------|",
            f"| {sev_badge['error']} | {self.result.error_count} |",
            f"| {sev_badge['warning']} | {self.result.warning_count} |",
            "",
            f"**Total Issues: {self.result.total_issues}**",
            "",
        ])
        if self.result.has_errors():
            lines.append("> Errors were reported; the run is blocked unless "
                         "`CONTINUE_ON_SECURITY_ISSUES=true`.")
            lines.append("")

        lines.extend(["---", "", "## Issues", ""])
        if not self.result.issues:
            lines.extend(["No issues found.", ""])

        issue_num = 1
        for sev, issues in self._group_by_severity().items():
            lines.extend([f"### {sev_badge.get(sev, sev)}", ""])
            for issue in issues:
                lines.append(f"{issue_num}. {issue.message}")
                issue_num += 1
            lines.append("")

        return "\n".join(lines)
