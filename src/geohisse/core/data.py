"""Observed tip ranges."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np
import pandas as pd

from .states import RangeCategory
from .tip_observations import RangeObservation, RangeTipObservation
from .trees import TreeStructure, TreeStructureError

logger = logging.getLogger(__name__)

# hisse data coding: 1 = endemic A ("00"), 2 = endemic B ("11"), 0 = widespread ("01")
HISSE_CODES = {1: RangeCategory.A, 2: RangeCategory.B, 0: RangeCategory.AB}


@dataclass
class TipData:
    """
    Observed range per taxon.

    Attributes:
        ranges: {taxon: observation}, see RangeTipObservation for accepted forms
        metadata: Free-form annotations (source file, coding, ...)
    """

    ranges: Dict[str, RangeObservation]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.ranges:
            raise TreeStructureError("Tip data is empty")

    @classmethod
    def from_dict(cls, ranges: Dict[str, RangeObservation], **metadata) -> "TipData":
        return cls(ranges=dict(ranges), metadata=metadata)

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        taxon_column: str = "taxon",
        range_column: str = "range",
        coding: str = "labels",
    ) -> "TipData":
        """
        Build from a two-column table.

        Args:
            df: Table with one row per taxon
            taxon_column: Column holding taxon names
            range_column: Column holding range codes
            coding: "labels" (A / B / AB, ambiguity as "A|AB", "?" missing)
                or "hisse" (1 = A, 2 = B, 0 = AB)
        """
        for column in (taxon_column, range_column):
            if column not in df.columns:
                raise TreeStructureError(f"Tip table has no column {column!r}")
        if df[taxon_column].duplicated().any():
            dupes = df.loc[df[taxon_column].duplicated(), taxon_column].tolist()
            raise TreeStructureError(f"Duplicate taxa in tip table: {dupes}")

        ranges = {}
        for taxon, code in zip(df[taxon_column].astype(str), df[range_column]):
            if coding == "hisse":
                if pd.isna(code) or int(code) not in HISSE_CODES:
                    raise TreeStructureError(f"Unknown hisse range code {code!r} for {taxon}")
                ranges[taxon] = HISSE_CODES[int(code)]
            elif coding == "labels":
                ranges[taxon] = "?" if pd.isna(code) else str(code)
            else:
                raise ValueError(f"Unknown coding: {coding}")
        return cls(ranges=ranges, metadata={"coding": coding})

    @classmethod
    def from_csv(cls, filepath: Union[str, Path], sep: str = ",", **kwargs) -> "TipData":
        df = pd.read_csv(filepath, sep=sep, dtype={kwargs.get("taxon_column", "taxon"): str})
        data = cls.from_frame(df, **kwargs)
        data.metadata["source"] = str(filepath)
        logger.info("Loaded %d tip ranges from %s", len(data.ranges), filepath)
        return data

    def conditionals(self, tree: TreeStructure, observation: RangeTipObservation) -> np.ndarray:
        """
        Tip conditional vectors in ``tree.tip_indices`` order.

        Raises:
            TreeStructureError: If tips lack data or data names unknown taxa.
        """
        names = set(tree.tip_names)
        missing = sorted(names - set(self.ranges))
        extra = sorted(set(self.ranges) - names)
        if missing or extra:
            raise TreeStructureError(
                f"Tip data does not match the tree: missing={missing[:10]}, unknown={extra[:10]}"
            )
        return observation.get_tip_likelihoods_matrix([self.ranges[n] for n in tree.tip_names])

    def __len__(self) -> int:
        return len(self.ranges)

    def __repr__(self) -> str:
        return f"TipData(taxa={len(self.ranges)})"
