import io
import logging
import math
import numbers
import re
from typing import Iterable, Mapping

import pandas as pd

logger = logging.getLogger(__name__)

ID_COL = "id"
QTY_COL = "Quantity"
PRICE_COL = "Unit_Price_Source"
WEIGHT_COL = "Unit_Weight_KG"
DESC_COL = "Description"
NCM_COL = "NCM"

NUMERIC_COLUMNS = [QTY_COL, PRICE_COL, WEIGHT_COL]
REQUIRED_COLUMNS = [ID_COL] + NUMERIC_COLUMNS

# Header aliases accepted from records and spreadsheet exports
# (snake_case API names and the Portuguese headers of the old simulator).
_HEADER_ALIASES = {
    "id": ID_COL,
    "id_produto_interno": ID_COL,
    "quantity": QTY_COL,
    "quantidade": QTY_COL,
    "unit_price_source": PRICE_COL,
    "unit_price_usd": PRICE_COL,
    "unitpricesource": PRICE_COL,
    "valor_unitario_usd": PRICE_COL,
    "fob_unit_usd": PRICE_COL,
    "unit_weight_kg": WEIGHT_COL,
    "unitweightkg": WEIGHT_COL,
    "peso_bruto_unitario_kg": WEIGHT_COL,
    "description": DESC_COL,
    "descricao_produto": DESC_COL,
    "ncm": NCM_COL,
}

_NUMBER_RE = re.compile(r"^[+-]?[\d.,]+$")


class LinesInputError(ValueError):
    """Raised when product lines are structurally malformed."""


def parse_brazilian_number(value) -> float:
    """
    Parse a number typed the Brazilian way:
      - '1.234,56' => 1234.56
      - '5,5'      => 5.5
      - '10'       => 10.0
      - empty/None/NaN => 0.0
    Finite ints and floats pass through unchanged; infinities are rejected.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise LinesInputError(f"Not a number: {value!r}")
    if isinstance(value, numbers.Real):
        if math.isnan(value):
            return 0.0
        if math.isinf(value):
            raise LinesInputError(f"Not a finite number: {value!r}")
        return float(value)

    s = str(value).strip().replace("R$", "").replace("US$", "").replace(" ", "")
    if not s or s.upper() == "NAN":
        return 0.0
    if not _NUMBER_RE.match(s):
        raise LinesInputError(f"Not a number: {value!r}")

    if "," in s:
        # thousands with '.', decimals with ','
        s = s.replace(".", "").replace(",", ".")
    elif s.count(".") > 1:
        s = s.replace(".", "")
    try:
        return float(s)
    except ValueError as exc:
        raise LinesInputError(f"Not a number: {value!r}") from exc


def _canonical_header(name) -> str:
    key = str(name).strip()
    return _HEADER_ALIASES.get(key.lower(), key)


def _clamp_negatives(df: pd.DataFrame) -> pd.DataFrame:
    for col in NUMERIC_COLUMNS:
        negative = df[col] < 0
        if negative.any():
            logger.warning(
                "Clamping %d negative %s value(s) to 0 (lines: %s)",
                int(negative.sum()),
                col,
                ", ".join(map(str, df.index[negative.to_numpy()])),
            )
            df.loc[negative, col] = 0.0
    return df


def _finalize(df: pd.DataFrame) -> pd.DataFrame:
    """Validate ids, parse numbers, clamp negatives and index by id."""
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise LinesInputError(
            "Product lines are missing required columns: " + ", ".join(missing)
        )

    df[ID_COL] = df[ID_COL].astype(str).str.strip()
    if (df[ID_COL] == "").any() or df[ID_COL].isin(["nan", "None"]).any():
        raise LinesInputError("Every product line needs a non-empty id.")

    duplicated = df[ID_COL][df[ID_COL].duplicated()].unique().tolist()
    if duplicated:
        raise LinesInputError("Duplicate line ids: " + ", ".join(duplicated))

    for col in NUMERIC_COLUMNS:
        blank = df[col].isna() | (df[col].astype(str).str.strip() == "")
        if blank.any():
            raise LinesInputError(
                f"Missing {col} for line(s): " + ", ".join(df.loc[blank, ID_COL])
            )

    for col in NUMERIC_COLUMNS:
        df[col] = df[col].map(parse_brazilian_number).astype(float)

    df = df.set_index(ID_COL)
    return _clamp_negatives(df)


def build_lines_frame(records: Iterable[Mapping]) -> pd.DataFrame:
    """
    Build the line table the engine consumes from plain records.

    Each record needs an id, a quantity, a unit price (source currency) and a
    unit weight in kg. Description and NCM are carried along untouched.
    Negative numbers are clamped to 0 here, before anything reaches the
    engine.
    """
    rows = []
    for record in records:
        if not isinstance(record, Mapping):
            raise LinesInputError(f"Product line must be a mapping, got {type(record).__name__}")
        rows.append({_canonical_header(k): v for k, v in record.items()})

    if not rows:
        empty = pd.DataFrame({col: pd.Series(dtype=float) for col in NUMERIC_COLUMNS})
        empty.index = pd.Index([], dtype=object, name=ID_COL)
        return empty

    return _finalize(pd.DataFrame(rows))


def load_lines_from_csv(path_or_buffer) -> pd.DataFrame:
    """
    Load product lines from a CSV export (',' or ';' separated, picked from
    the header line).

    Accepts the English column names or the Portuguese headers of the old
    simulator spreadsheet. When there is no id column, ids L1..Ln are
    generated in file order.
    """
    if hasattr(path_or_buffer, "read"):
        text = path_or_buffer.read()
        if isinstance(text, bytes):
            text = text.decode("utf-8-sig")
    else:
        with open(path_or_buffer, "r", encoding="utf-8-sig") as f:
            text = f.read()

    header = text.split("\n", 1)[0]
    sep = ";" if header.count(";") > header.count(",") else ","

    try:
        df = pd.read_csv(io.StringIO(text), sep=sep, dtype=str)
    except pd.errors.EmptyDataError as exc:
        raise LinesInputError("CSV has no header and no product lines") from exc
    df = df.rename(columns=_canonical_header)

    if ID_COL not in df.columns:
        df.insert(0, ID_COL, [f"L{i}" for i in range(1, len(df) + 1)])

    df = _finalize(df)
    logger.debug("Loaded %d product lines from CSV", len(df))
    return df
