"""
Chart Layer - series orchestration and output.

Main Components:
    ChartController: Drives aggregation, caching, rebuilds and series
    ActiveSerie: A series registered on the chart
    RenderSink: Interface of the display collaborator
    MemorySink: In-memory RenderSink with DataFrame export
"""

from .controller import ActiveSerie, ChartController
from .sink import MemorySink, RenderSink

__all__ = [
    "ActiveSerie",
    "ChartController",
    "MemorySink",
    "RenderSink",
]
