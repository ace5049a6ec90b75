"""
Style Catalog
"""
from typing import Iterable, List, Optional

from preview_engine.models import StyleOption


class StyleCatalog:
    """Ordered collection of art styles offered to the customer"""

    def __init__(self, styles: Iterable[StyleOption] = ()):
        self._styles: List[StyleOption] = []
        for style in styles:
            self.add(style)

    def add(self, style: StyleOption) -> None:
        if self.get(style.id):
            raise ValueError(f"Duplicate style id: {style.id}")
        self._styles.append(style)

    def get(self, style_id: str) -> Optional[StyleOption]:
        for style in self._styles:
            if style.id == style_id:
                return style
        return None

    def filter(self, style_ids: Iterable[str]) -> List[StyleOption]:
        """Known styles among ``style_ids``, in catalog order"""
        wanted = set(style_ids)
        return [style for style in self._styles if style.id in wanted]

    def __len__(self) -> int:
        return len(self._styles)

    def __iter__(self):
        return iter(self._styles)
