"""
Page-side collaborators.

The session manager does not know how code cells are found or how widgets
are rendered. It only needs something that lists cells and something that
binds widget models to the live kernel. StaticPage is the in-memory version
used for headless runs and tests.
"""

from typing import Any, Iterable, List, Optional, Protocol, Sequence, runtime_checkable


@runtime_checkable
class Page(Protocol):
    def code_cells(self) -> Iterable[Any]: ...

    def cell_to_code(self, cell: Any) -> str: ...

    def page_has_widgets(self) -> bool: ...


@runtime_checkable
class WidgetManager(Protocol):
    def set_kernel(self, kernel) -> None: ...

    async def generate_widgets(self) -> None: ...

    async def display_model(self, cell: Any, model_id: str) -> None: ...


class StaticPage:
    """A page made of plain code strings."""

    def __init__(self, cells: Optional[Sequence[str]] = None, has_widgets: bool = False):
        self.cells: List[str] = list(cells or [])
        self.has_widgets = has_widgets

    def code_cells(self) -> List[str]:
        return list(self.cells)

    def cell_to_code(self, cell: str) -> str:
        return cell.strip()

    def page_has_widgets(self) -> bool:
        return self.has_widgets
