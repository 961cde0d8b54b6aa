# src/deconv_benchmark/taxonomy.py
"""
Cell-type taxonomy: a fixed partition of labels into cancer, immune and other.

The simulator assigns the cancer fraction only to `cancer` labels and spreads
the remainder over `non_cancer` (immune + other) labels. Each cancer label
also carries the indication code (TCGA study abbreviation) that
indication-aware methods such as TIMER expect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import InputFormatError

logger = logging.getLogger(__name__)

DEFAULT_CANCER_TYPES = ("Melanoma cell", "Ovarian carcinoma cell")
DEFAULT_IMMUNE_TYPES = (
    "B cell",
    "Dendritic cell",
    "Macrophage/Monocyte",
    "NK cell",
    "T cell CD4+",
    "T cell CD8+",
    "T cell regulatory (Tregs)",
)
DEFAULT_OTHER_TYPES = ("Cancer associated fibroblast", "Endothelial cell")

# cancer cell type → TCGA indication code
DEFAULT_INDICATION_CODES = {
    "Melanoma cell": "skcm",
    "Ovarian carcinoma cell": "ov",
}


@dataclass(frozen=True)
class Taxonomy:
    cancer: Tuple[str, ...] = DEFAULT_CANCER_TYPES
    immune: Tuple[str, ...] = DEFAULT_IMMUNE_TYPES
    other: Tuple[str, ...] = DEFAULT_OTHER_TYPES
    indication_codes: Tuple[Tuple[str, str], ...] = tuple(DEFAULT_INDICATION_CODES.items())

    def __post_init__(self):
        seen: Dict[str, str] = {}
        for group, labels in (("cancer", self.cancer), ("immune", self.immune), ("other", self.other)):
            for lab in labels:
                if lab in seen:
                    raise InputFormatError(
                        f"Cell type '{lab}' listed in both '{seen[lab]}' and '{group}'."
                    )
                seen[lab] = group

    @property
    def non_cancer(self) -> Tuple[str, ...]:
        return tuple(self.immune) + tuple(self.other)

    @property
    def all_types(self) -> Tuple[str, ...]:
        return tuple(self.cancer) + self.non_cancer

    def indication_of(self, cancer_type: str) -> str:
        """Indication code for a cancer label; unknown labels pass through lowercased."""
        codes = dict(self.indication_codes)
        if cancer_type in codes:
            return codes[cancer_type]
        logger.warning(f"No indication code for '{cancer_type}'; indication-aware methods will likely fail.")
        return cancer_type.lower()

    @classmethod
    def from_lists(
        cls,
        cancer: Sequence[str],
        immune: Sequence[str],
        other: Sequence[str] = (),
        indication_codes: Optional[Mapping[str, str]] = None,
    ) -> "Taxonomy":
        if not cancer:
            raise InputFormatError("Taxonomy needs at least one cancer cell type.")
        codes = {**DEFAULT_INDICATION_CODES, **dict(indication_codes or {})}
        return cls(tuple(cancer), tuple(immune), tuple(other), tuple(sorted(codes.items())))

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "cancer": list(self.cancer),
            "immune": list(self.immune),
            "other": list(self.other),
            "indication_codes": {ct: self.indication_of(ct) for ct in self.cancer},
        }


def parse_indication_codes(pairs: Optional[Sequence[str]]) -> Dict[str, str]:
    """["Melanoma cell=skcm", ...] → {"Melanoma cell": "skcm", ...}"""
    out: Dict[str, str] = {}
    for p in pairs or []:
        label, sep, code = str(p).rpartition("=")
        if not sep or not label.strip() or not code.strip():
            raise InputFormatError(f"Indication code must look like 'Cell type=code', got '{p}'.")
        out[label.strip()] = code.strip().lower()
    return out


__all__ = [
    "Taxonomy",
    "DEFAULT_CANCER_TYPES",
    "DEFAULT_IMMUNE_TYPES",
    "DEFAULT_OTHER_TYPES",
    "DEFAULT_INDICATION_CODES",
    "parse_indication_codes",
]
