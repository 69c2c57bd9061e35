# scqc_report/visualization/report.py

import html
import logging
import os
import platform
import sys
from dataclasses import dataclass, field
from importlib import metadata
from pathlib import Path

import pandas as pd

from .plotting import PlotOk, PlotOmitted

log = logging.getLogger(__name__)

SESSION_PACKAGES = ("scqc_report", "scanpy", "anndata", "numpy", "pandas", "scipy", "matplotlib", "PyYAML")


@dataclass
class ReportSection:
    title: str
    tables: list[pd.DataFrame] = field(default_factory=list)
    plots: list = field(default_factory=list)
    text: str | None = None


def session_info() -> pd.DataFrame:
    """Versions of the interpreter, platform and the packages the report depends on."""
    rows = [("python", sys.version.split()[0]), ("platform", platform.platform())]
    for package in SESSION_PACKAGES:
        try:
            rows.append((package, metadata.version(package)))
        except metadata.PackageNotFoundError:
            rows.append((package, "not installed"))
    return pd.DataFrame(rows, columns=["component", "version"]).set_index("component")


def _render_plot(result, output_dir: str) -> str:
    if isinstance(result, PlotOk):
        src = os.path.relpath(result.path, output_dir)
        return (f'<figure><img src="{html.escape(src)}" alt="{html.escape(result.name)}">'
                f'<figcaption>{html.escape(result.name)}</figcaption></figure>')
    if isinstance(result, PlotOmitted):
        return (f'<p class="omitted">Plot <b>{html.escape(result.name)}</b> omitted: '
                f'{html.escape(result.reason)}</p>')
    raise TypeError(f"Unexpected plot result: {result!r}")


def render_report(title: str, sections: list[ReportSection], output_path: str) -> str:
    """Writes the sections, in order, to a standalone HTML file and returns its path."""
    output_dir = os.path.dirname(os.path.abspath(output_path))
    Path(output_dir).mkdir(parents=True, exist_ok=True)

    parts = [
        "<!DOCTYPE html>",
        "<html><head><meta charset=\"utf-8\">",
        f"<title>{html.escape(title)}</title>",
        "<style>body{font-family:sans-serif;max-width:1000px;margin:auto}"
        "img{max-width:100%}table{border-collapse:collapse}"
        "td,th{border:1px solid #ccc;padding:2px 6px}.omitted{color:#a00}</style>",
        "</head><body>",
        f"<h1>{html.escape(title)}</h1>",
    ]
    for section in sections:
        parts.append(f"<h2>{html.escape(section.title)}</h2>")
        if section.text:
            parts.append(f"<p>{html.escape(section.text)}</p>")
        for table in section.tables:
            parts.append(table.to_html(border=0))
        for result in section.plots:
            parts.append(_render_plot(result, output_dir))
    parts.append("</body></html>")

    with open(output_path, "w", encoding="utf-8") as f:
        f.write("\n".join(parts))
    log.info(f"Report written to: {output_path}")
    return output_path
