"""
Plot components for the logger dashboard.
"""

from typing import List

import plotly.graph_objects as go  # type: ignore
from plotly.subplots import make_subplots  # type: ignore

from ..models import Sample


def _empty_figure(title: str) -> go.Figure:
    fig = go.Figure()
    fig.add_annotation(
        x=0.5,
        y=0.5,
        text="No data available",
        showarrow=False,
        xref="paper",
        yref="paper",
        font=dict(size=16, color="gray"),
    )
    fig.update_layout(title=title, height=400)
    return fig


def create_environment_plot(
    data: List[Sample], title: str = "Temperature / Humidity"
) -> go.Figure:
    """Temperature and humidity against the sample timestamps.

    Rows with a missing value leave a gap in the corresponding trace.
    """
    if not data:
        return _empty_figure(title)

    timestamps = [s.timestamp for s in data]

    fig = make_subplots(
        rows=2,
        cols=1,
        shared_xaxes=True,
        vertical_spacing=0.08,
        subplot_titles=("Temperature (°C)", "Humidity (%)"),
    )
    fig.add_trace(
        go.Scatter(
            x=timestamps,
            y=[s.temperature for s in data],
            mode="lines",
            name="Temperature",
            line=dict(color="orange", width=1.5),
        ),
        row=1,
        col=1,
    )
    fig.add_trace(
        go.Scatter(
            x=timestamps,
            y=[s.humidity for s in data],
            mode="lines",
            name="Humidity",
            line=dict(color="steelblue", width=1.5),
        ),
        row=2,
        col=1,
    )
    fig.update_layout(
        title=title,
        showlegend=False,
        height=400,
        margin=dict(l=50, r=20, t=60, b=40),
    )
    return fig
