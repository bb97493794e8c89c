"""Resolve a dashboard widget to the graph it displays."""

import math
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx

import zbx
from zbx import ChartConfig, ErrorKind, user_error

logger = logging.getLogger(__name__)

GRAPH_WIDGET_TYPES = ("graph", "graphprototype", "svggraph")
DEFAULT_WIDTH = 600
DEFAULT_HEIGHT = 300

Number = Union[int, float]


@dataclass(frozen=True)
class ResolvedChart:
    graph_id: Number
    title: Optional[str] = None
    time_config: dict = field(default_factory=dict)
    width: Number = DEFAULT_WIDTH
    height: Number = DEFAULT_HEIGHT


def normalize_numeric_id(value: Any) -> Optional[Number]:
    """Return ``value`` as a finite number, or None if it is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def widget_field_value(widget_field: Any) -> Any:
    """Return the first populated of ``value``, ``value_int`` and ``value_str``."""
    if not isinstance(widget_field, dict):
        return None
    for key in ("value", "value_int", "value_str"):
        if widget_field.get(key) is not None:
            return widget_field[key]
    return None


def _field_name(widget_field: Any) -> Optional[str]:
    if not isinstance(widget_field, dict) or not isinstance(widget_field.get("name"), str):
        return None
    return widget_field["name"].strip()


def _matches(name: str, prefix: str) -> bool:
    return name == prefix or name.startswith(f"{prefix}.")


def _widget_fields(widget: Any) -> list:
    if not isinstance(widget, dict) or not isinstance(widget.get("fields"), list):
        return []
    return widget["fields"]


def collect_dashboard_widgets(dashboard: Any) -> list[dict]:
    """Flatten the widgets of every page, keeping page order."""
    widgets: list[dict] = []
    pages = dashboard.get("pages") if isinstance(dashboard, dict) else None
    for page in pages if isinstance(pages, list) else []:
        if isinstance(page, dict) and isinstance(page.get("widgets"), list):
            widgets.extend(w for w in page["widgets"] if isinstance(w, dict))
    return widgets


def is_graph_widget(widget: Any) -> bool:
    if not isinstance(widget, dict) or not isinstance(widget.get("type"), str):
        return False
    return widget["type"].lower() in GRAPH_WIDGET_TYPES


def pick_dashboard_widget(widgets: list[dict], config: ChartConfig) -> Optional[dict]:
    """Select by widget id, then by name, then the first graph-type widget."""
    if not widgets:
        return None

    if config.widget_id is not None:
        widget_id = str(config.widget_id)
        if widget_id:
            for widget in widgets:
                if str(widget.get("widgetid")) == widget_id:
                    return widget

    widget_name = config.widget_name.strip() if isinstance(config.widget_name, str) else ""
    if widget_name:
        for widget in widgets:
            name = widget.get("name")
            if isinstance(name, str) and name.strip() == widget_name:
                return widget

    return next((w for w in widgets if is_graph_widget(w)), None)


def extract_graph_id_from_widget(widget: Any) -> Optional[Number]:
    for widget_field in _widget_fields(widget):
        name = _field_name(widget_field)
        if name is not None and _matches(name, "graphid"):
            return normalize_numeric_id(widget_field_value(widget_field))
    return None


def extract_widget_time_config(widget: Any) -> dict:
    """Collect ``period``, ``stime`` and ``time_shift`` overrides from widget fields.

    Field names may carry an index suffix (``time_period.0``); the first usable
    value of each kind wins.
    """
    time_config: dict = {}
    for widget_field in _widget_fields(widget):
        name = _field_name(widget_field)
        value = widget_field_value(widget_field)
        if name is None or value is None:
            continue
        name = name.lower()

        if _matches(name, "time_period"):
            if "period" in time_config:
                continue
            period = normalize_numeric_id(value)
            if period is not None:
                time_config["period"] = period
        elif _matches(name, "time_from"):
            stime = value.strip() if isinstance(value, str) else str(value)
            if stime and "stime" not in time_config:
                time_config["stime"] = stime
        elif _matches(name, "time_shift"):
            shift = value.strip() if isinstance(value, str) else str(value)
            if shift and "time_shift" not in time_config:
                time_config["time_shift"] = shift
    return time_config


def _positive(value: Any) -> Optional[Number]:
    number = normalize_numeric_id(value)
    return number if number is not None and number > 0 else None


def extract_widget_dimensions(widget: Any, config: ChartConfig) -> tuple[Number, Number]:
    widget = widget if isinstance(widget, dict) else {}
    width = _positive(widget.get("width")) or _positive(config.width) or DEFAULT_WIDTH
    height = _positive(widget.get("height")) or _positive(config.height) or DEFAULT_HEIGHT
    return width, height


async def fetch_dashboard_graph(
    config: ChartConfig,
    auth: Optional[str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ResolvedChart:
    dashboard_id = normalize_numeric_id(config.dashboard_id)
    if dashboard_id is None:
        raise user_error("Missing dashboardId in configuration", ErrorKind.CONFIGURATION)

    dashboards = await zbx.call(
        "dashboard.get",
        {
            "dashboardids": [dashboard_id],
            "selectPages": ["dashboard_pageid", "widgets"],
        },
        config,
        auth,
        transport=transport,
    )
    if not isinstance(dashboards, list) or not dashboards:
        raise user_error(
            f"Dashboard {dashboard_id} was not found or you lack permission to view it",
            ErrorKind.NOT_FOUND,
        )

    widgets = collect_dashboard_widgets(dashboards[0])
    if not widgets:
        raise user_error(
            f"Dashboard {dashboard_id} does not contain any widgets you can access",
            ErrorKind.RESOLUTION,
        )

    widget = pick_dashboard_widget(widgets, config)
    if widget is None:
        raise user_error(f"No matching graph widget was found on dashboard {dashboard_id}", ErrorKind.RESOLUTION)

    graph_id = extract_graph_id_from_widget(widget)
    if graph_id is None:
        raise user_error("The selected dashboard widget does not reference a graph", ErrorKind.RESOLUTION)

    name = widget.get("name")
    title = name.strip() if isinstance(name, str) and name.strip() else None
    width, height = extract_widget_dimensions(widget, config)
    logger.debug("dashboard %s: widget %s -> graph %s", dashboard_id, widget.get("widgetid"), graph_id)
    return ResolvedChart(
        graph_id=graph_id,
        title=title,
        time_config=extract_widget_time_config(widget),
        width=width,
        height=height,
    )


def reject_direct_graph(config: ChartConfig) -> None:
    if normalize_numeric_id(config.graph_id) is not None:
        raise user_error("Use dashboard widgets instead of direct graph IDs", ErrorKind.RESOLUTION)


async def resolve_graph_reference(
    config: ChartConfig,
    auth: Optional[str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ResolvedChart:
    """Resolve the configured dashboard widget; direct graph ids are refused."""
    reject_direct_graph(config)

    if normalize_numeric_id(config.dashboard_id) is not None:
        return await fetch_dashboard_graph(config, auth, transport)

    raise user_error("Missing dashboardId and widget selection in configuration", ErrorKind.CONFIGURATION)
