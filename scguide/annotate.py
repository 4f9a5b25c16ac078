import logging
from typing import Any, Mapping

import pandas as pd

from .errors import ConfigError


logger = logging.getLogger("scguide.annotate")


def rename_clusters(labels: pd.Series, mapping: Mapping[Any, str]) -> pd.Series:
    """Relabel clusters with descriptive names; labels missing from `mapping` keep their value.

    The mapping must be injective and may not reuse a label that stays
    unmapped, otherwise two clusters would collapse into one name.
    """
    present = {str(v) for v in pd.unique(labels)}
    norm = {str(k): str(v) for k, v in (mapping or {}).items()}
    unknown = sorted(set(norm) - present)
    if unknown:
        logger.warning("Cell-type mapping names clusters that do not exist: %s", unknown)
    names = list(norm.values())
    if len(set(names)) != len(names):
        dup = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"cell-type names must be unique, repeated: {dup}", stage="annotation", param="cell_types")
    unmapped = present - set(norm)
    clash = sorted(unmapped & set(names))
    if clash:
        raise ConfigError(
            f"cell-type name(s) {clash} collide with unmapped cluster labels", stage="annotation", param="cell_types"
        )
    out = labels.astype(str).map(lambda x: norm.get(x, x))
    out.name = "cell_type"
    return out
