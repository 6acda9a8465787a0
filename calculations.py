import logging
from dataclasses import asdict, dataclass
from typing import Iterable, Mapping, Union

import pandas as pd

from lines_loader import (
    ID_COL,
    PRICE_COL,
    QTY_COL,
    WEIGHT_COL,
    build_lines_frame,
)

logger = logging.getLogger(__name__)

# Métodos de rateio aceitos (valor canônico)
WEIGHT = "weight"
FOB_VALUE = "fobValue"
QUANTITY = "quantity"

_METHOD_ALIASES = {
    "weight": WEIGHT,
    "peso": WEIGHT,
    "fobvalue": FOB_VALUE,
    "fob_value": FOB_VALUE,
    "fob": FOB_VALUE,
    "valor_fob": FOB_VALUE,
    "quantity": QUANTITY,
    "quantidade": QUANTITY,
}

_CURRENCY_ALIASES = {
    "source": "source",
    "usd": "source",
    "local": "local",
    "brl": "local",
}

# Colunas calculadas por item
TOTAL_WEIGHT_COL = "Total_Weight_KG"
FOB_COL = "FOB_Value_Source"
OWN_COST_COL = "Own_Cost_Local"
FREIGHT_COL = "Freight_Local"
CFR_COL = "Cost_Plus_Freight_Local"
DUTY_BASE_COL = "Duty_Base_Local"
DUTY_COL = "Duty_Local"
FEES_COL = "Other_Fees_Local"
ICMS_BASE_COL = "ICMS_Base_Local"
ICMS_COL = "ICMS_Local"
LANDED_COL = "Landed_Cost_Local"
UNIT_NO_TAX_COL = "Unit_Cost_No_Tax_Local"
UNIT_WITH_TAX_COL = "Unit_Cost_With_Tax_Local"

DERIVED_COLUMNS = [
    TOTAL_WEIGHT_COL,
    FOB_COL,
    OWN_COST_COL,
    FREIGHT_COL,
    CFR_COL,
    DUTY_BASE_COL,
    DUTY_COL,
    FEES_COL,
    ICMS_BASE_COL,
    ICMS_COL,
    LANDED_COL,
    UNIT_NO_TAX_COL,
    UNIT_WITH_TAX_COL,
]

_ALLOCATION_BASIS = {
    WEIGHT: TOTAL_WEIGHT_COL,
    FOB_VALUE: FOB_COL,
    QUANTITY: QTY_COL,
}


def normalize_method(method: str) -> str:
    """Retorna o método de rateio canônico ('weight', 'fobValue', 'quantity')."""
    key = str(method).strip().lower()
    if key not in _METHOD_ALIASES:
        raise ValueError(
            f"Unknown allocation method {method!r}; "
            "expected 'weight', 'fobValue' or 'quantity'."
        )
    return _METHOD_ALIASES[key]


def normalize_currency(currency: str) -> str:
    key = str(currency).strip().lower()
    if key not in _CURRENCY_ALIASES:
        raise ValueError(
            f"Unknown freight currency {currency!r}; expected 'source' or 'local'."
        )
    return _CURRENCY_ALIASES[key]


@dataclass
class SimulationConfig:
    exchange_rate: float = 5.20

    # Tributação (frações, não percentuais)
    duty_rate: float = 0.60
    icms_rate: float = 0.17

    # Frete internacional: moeda de origem ("source") ou já em moeda local ("local")
    freight_total: float = 0.0
    freight_currency: str = "source"

    # Outras despesas aduaneiras, sempre em moeda local
    other_fees_total: float = 0.0

    # Métodos de rateio independentes
    freight_allocation_method: str = WEIGHT
    fees_allocation_method: str = QUANTITY

    # ICMS "por dentro": base dividida por (1 - alíquota)
    icms_inside_base: bool = False

    def __post_init__(self):
        self.freight_allocation_method = normalize_method(self.freight_allocation_method)
        self.fees_allocation_method = normalize_method(self.fees_allocation_method)
        self.freight_currency = normalize_currency(self.freight_currency)

    @property
    def freight_total_local(self) -> float:
        """Frete total já convertido para moeda local."""
        # o campo é mutável; normaliza a cada leitura
        if normalize_currency(self.freight_currency) == "source":
            return float(self.freight_total) * float(self.exchange_rate)
        return float(self.freight_total)


@dataclass(frozen=True)
class SimulationTotals:
    total_quantity: float = 0.0
    total_weight_kg: float = 0.0
    total_fob_value_source: float = 0.0
    total_own_cost_local: float = 0.0
    total_allocated_freight_local: float = 0.0
    total_cost_plus_freight_local: float = 0.0
    total_duty_base_local: float = 0.0
    total_duty_local: float = 0.0
    total_allocated_other_fees_local: float = 0.0
    total_icms_base_local: float = 0.0
    total_icms_local: float = 0.0
    total_landed_cost_local: float = 0.0
    cost_per_kg_source: float = 0.0
    import_multiplier: float = 0.0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class SimulationResult:
    lines: pd.DataFrame
    totals: SimulationTotals

    def line(self, line_id: str) -> dict:
        """Linha calculada de um item, como dicionário."""
        row = self.lines.loc[line_id]
        return {ID_COL: line_id, **row.to_dict()}


LinesInput = Union[pd.DataFrame, Iterable[Mapping]]


def as_lines_frame(lines: LinesInput) -> pd.DataFrame:
    if isinstance(lines, pd.DataFrame):
        if ID_COL in lines.columns:
            return lines.set_index(ID_COL)
        return lines
    return build_lines_frame(lines)


def _check_preconditions(df: pd.DataFrame) -> None:
    # Desligado com python -O; a validação de verdade acontece no loader
    assert df.index.is_unique, "line ids must be unique"
    assert (df[[QTY_COL, PRICE_COL, WEIGHT_COL]] >= 0).all().all(), (
        "quantity, unit price and unit weight must be >= 0"
    )


def prepare_lines(lines: LinesInput, exchange_rate: float) -> pd.DataFrame:
    """
    Copia a tabela de itens e acrescenta peso total, FOB total (moeda de
    origem) e custo próprio em moeda local.

    A conversão de moeda acontece aqui, uma única vez.
    """
    df = as_lines_frame(lines).copy()
    _check_preconditions(df)

    df[TOTAL_WEIGHT_COL] = df[WEIGHT_COL] * df[QTY_COL]
    df[FOB_COL] = df[PRICE_COL] * df[QTY_COL]
    df[OWN_COST_COL] = df[FOB_COL] * float(exchange_rate)
    return df


def allocate(lines: pd.DataFrame, total_to_allocate: float, method: str) -> pd.Series:
    """
    Rateia 'total_to_allocate' entre os itens proporcionalmente à base do
    método escolhido (peso total, FOB total ou quantidade).

    Retorna uma Series indexada pelo id do item. Se a soma da base for zero,
    nenhum item recebe rateio (todas as parcelas são 0).
    """
    column = _ALLOCATION_BASIS[normalize_method(method)]
    basis = lines[column].astype(float)
    basis_total = basis.sum()
    assert basis_total >= 0, f"allocation basis {column} sums to a negative value"

    if basis_total > 0:
        share = basis / basis_total
    else:
        share = pd.Series(0.0, index=lines.index)
    return share * float(total_to_allocate)


def compute_taxes(
    lines: pd.DataFrame,
    allocated_freight: pd.Series,
    allocated_fees: pd.Series,
    duty_rate: float,
    icms_rate: float,
    icms_inside_base: bool = False,
) -> pd.DataFrame:
    """
    Calcula II e ICMS por item, nesta ordem.

    - Base do II = custo próprio (moeda local) + frete rateado
    - Base do ICMS = base do II + II + outras despesas rateadas

    O ICMS incide sobre o II (imposto sobre imposto), por isso o II precisa
    estar resolvido antes. As alíquotas são usadas como recebidas: valores
    fora de [0, 1] são responsabilidade de quem chama.
    """
    duty_rate = float(duty_rate)
    icms_rate = float(icms_rate)

    taxes = pd.DataFrame(index=lines.index)

    # II
    taxes[DUTY_BASE_COL] = lines[OWN_COST_COL] + allocated_freight
    taxes[DUTY_COL] = taxes[DUTY_BASE_COL] * duty_rate

    # ICMS
    icms_base = taxes[DUTY_BASE_COL] + taxes[DUTY_COL] + allocated_fees
    if icms_inside_base:
        if icms_rate >= 1.0:
            raise ValueError(
                f"ICMS rate {icms_rate} cannot be computed inside its own base."
            )
        icms_base = icms_base / (1.0 - icms_rate)
    taxes[ICMS_BASE_COL] = icms_base
    taxes[ICMS_COL] = taxes[ICMS_BASE_COL] * icms_rate

    return taxes


def _per_unit(amount: pd.Series, quantity: pd.Series) -> pd.Series:
    # quantidade zero => custo unitário zero, nunca NaN/inf
    return (amount / quantity.where(quantity > 0)).fillna(0.0)


def aggregate_line(
    lines: pd.DataFrame,
    exchange_rate: float,
    allocated_freight: pd.Series,
    allocated_fees: pd.Series,
    taxes: pd.DataFrame,
) -> pd.DataFrame:
    """Monta a tabela final por item: custo com frete, impostos, custo total e unitário."""
    df = lines.copy()

    if TOTAL_WEIGHT_COL not in df.columns:
        df[TOTAL_WEIGHT_COL] = df[WEIGHT_COL] * df[QTY_COL]
    if FOB_COL not in df.columns:
        df[FOB_COL] = df[PRICE_COL] * df[QTY_COL]
    if OWN_COST_COL not in df.columns:
        df[OWN_COST_COL] = df[FOB_COL] * float(exchange_rate)

    df[FREIGHT_COL] = allocated_freight
    df[CFR_COL] = df[OWN_COST_COL] + df[FREIGHT_COL]

    df[DUTY_BASE_COL] = taxes[DUTY_BASE_COL]
    df[DUTY_COL] = taxes[DUTY_COL]
    df[FEES_COL] = allocated_fees
    df[ICMS_BASE_COL] = taxes[ICMS_BASE_COL]
    df[ICMS_COL] = taxes[ICMS_COL]

    df[LANDED_COL] = df[CFR_COL] + df[DUTY_COL] + df[ICMS_COL] + df[FEES_COL]

    df[UNIT_NO_TAX_COL] = _per_unit(df[CFR_COL], df[QTY_COL])
    df[UNIT_WITH_TAX_COL] = _per_unit(df[LANDED_COL], df[QTY_COL])

    passthrough = [c for c in df.columns if c not in DERIVED_COLUMNS]
    return df[passthrough + DERIVED_COLUMNS]


def aggregate_simulation(lines: pd.DataFrame, exchange_rate: float) -> SimulationTotals:
    """
    Soma as colunas por item. Nenhum total é recalculado de forma
    independente, para que o resumo sempre feche com as linhas.
    """
    def total(column: str) -> float:
        return float(lines[column].sum())

    weight = total(TOTAL_WEIGHT_COL)
    fob = total(FOB_COL)
    landed = total(LANDED_COL)

    cost_per_kg = fob / weight if weight > 0 else 0.0
    fob_local = fob * float(exchange_rate)
    multiplier = landed / fob_local if fob_local > 0 else 0.0

    return SimulationTotals(
        total_quantity=total(QTY_COL),
        total_weight_kg=weight,
        total_fob_value_source=fob,
        total_own_cost_local=total(OWN_COST_COL),
        total_allocated_freight_local=total(FREIGHT_COL),
        total_cost_plus_freight_local=total(CFR_COL),
        total_duty_base_local=total(DUTY_BASE_COL),
        total_duty_local=total(DUTY_COL),
        total_allocated_other_fees_local=total(FEES_COL),
        total_icms_base_local=total(ICMS_BASE_COL),
        total_icms_local=total(ICMS_COL),
        total_landed_cost_local=landed,
        cost_per_kg_source=cost_per_kg,
        import_multiplier=multiplier,
    )


def simulate(cfg: SimulationConfig, lines: LinesInput) -> SimulationResult:
    """
    Calcula o custo de importação por item e o resumo da simulação.

    Ordem fixa: rateio do frete -> rateio das outras despesas -> impostos
    -> totais por item -> totais da simulação.
    """
    fx = float(cfg.exchange_rate)

    # =========================
    # 1) FOB, peso e custo próprio
    # =========================
    df = prepare_lines(lines, fx)

    # =========================
    # 2) Rateios
    # =========================
    freight = allocate(df, cfg.freight_total_local, cfg.freight_allocation_method)
    fees = allocate(df, cfg.other_fees_total, cfg.fees_allocation_method)

    # =========================
    # 3) II e ICMS
    # =========================
    taxes = compute_taxes(
        df,
        freight,
        fees,
        cfg.duty_rate,
        cfg.icms_rate,
        icms_inside_base=cfg.icms_inside_base,
    )

    # =========================
    # 4) Totais por item e da simulação
    # =========================
    per_line = aggregate_line(df, fx, freight, fees, taxes)
    totals = aggregate_simulation(per_line, fx)

    logger.debug(
        "Simulated %d lines (freight by %s, fees by %s): landed cost %.2f",
        len(per_line),
        cfg.freight_allocation_method,
        cfg.fees_allocation_method,
        totals.total_landed_cost_local,
    )
    return SimulationResult(lines=per_line, totals=totals)
