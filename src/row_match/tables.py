"""Row sources for the matcher.

The matcher only needs a row count and a way to read the match tuple of a
given row; these adapters provide that over numpy arrays and pandas frames.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np
import pandas as pd

from .errors import MatchConfigError


@runtime_checkable
class RowTable(Protocol):
    name: str

    @property
    def row_count(self) -> int:
        ...

    @property
    def tuple_width(self) -> int:
        ...

    def get_tuple(self, row: int) -> Tuple[object, ...]:
        ...


class ArrayTable:
    """Tuples taken from the rows of a 2-D array (or a sequence of rows)."""

    def __init__(self, rows: object, name: str = "array"):
        arr = np.asarray(rows)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        if arr.ndim != 2:
            raise ValueError(f"{name}: expected a 2-D array of rows, got shape {arr.shape}.")
        self.name = name
        self._rows = arr

    @property
    def row_count(self) -> int:
        return int(self._rows.shape[0])

    @property
    def tuple_width(self) -> int:
        return int(self._rows.shape[1])

    def get_tuple(self, row: int) -> Tuple[object, ...]:
        return tuple(self._rows[row].tolist())


class DataFrameTable:
    """Tuples built from selected columns of a DataFrame, in column order.

    Missing values come through as NaN for numeric columns and None for
    everything else.
    """

    def __init__(self, df: pd.DataFrame, columns: Sequence[str], name: Optional[str] = None):
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise MatchConfigError(f"{name or 'table'}: missing columns {missing}")
        self.name = name or "table"
        self.columns = list(columns)
        self._n = int(len(df))
        self._cols = []
        for c in self.columns:
            s = df[c]
            if pd.api.types.is_numeric_dtype(s) and not pd.api.types.is_bool_dtype(s):
                self._cols.append(s.to_numpy(dtype=float, na_value=np.nan))
            else:
                self._cols.append(s.to_numpy(dtype=object, na_value=None))

    @property
    def row_count(self) -> int:
        return self._n

    @property
    def tuple_width(self) -> int:
        return len(self._cols)

    def get_tuple(self, row: int) -> Tuple[object, ...]:
        return tuple(col[row] for col in self._cols)


__all__ = ["RowTable", "ArrayTable", "DataFrameTable"]
