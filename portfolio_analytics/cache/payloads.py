"""Tagged envelopes for cached artifacts.

Stored form::

    {"kind": "correlations", "schema_version": 1, "data": {...}}

Reading re-validates ``data`` against the schema registered for the kind;
anything that does not match is rejected as :class:`CorruptPayload` instead
of being served.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from portfolio_analytics.core.exceptions import CorruptPayload
from portfolio_analytics.schemas.analytics import (
    CorrelationMatrixPayload,
    RegimeForecastPayload,
    RiskMetricsPayload,
    TextArtifactPayload,
    VolatilityForecastPayload,
)

from .entries import ArtifactKind


SCHEMA_VERSION = 1

PAYLOAD_SCHEMAS: dict[ArtifactKind, type[BaseModel]] = {
    ArtifactKind.RISK: RiskMetricsPayload,
    ArtifactKind.PORTFOLIO_RISK: RiskMetricsPayload,
    ArtifactKind.CORRELATIONS: CorrelationMatrixPayload,
    ArtifactKind.VOLATILITY_FORECAST: VolatilityForecastPayload,
    ArtifactKind.REGIME_FORECAST: RegimeForecastPayload,
    ArtifactKind.NARRATIVE: TextArtifactPayload,
    ArtifactKind.NEWS: TextArtifactPayload,
    ArtifactKind.SENTIMENT: TextArtifactPayload,
}


def encode_payload(kind: ArtifactKind, value: BaseModel) -> dict[str, Any]:
    """Wrap a computed artifact for storage."""
    schema = PAYLOAD_SCHEMAS[kind]
    if not isinstance(value, schema):
        raise TypeError(
            f"{kind.value} artifacts must be {schema.__name__}, got {type(value).__name__}"
        )
    return {
        "kind": kind.value,
        "schema_version": SCHEMA_VERSION,
        "data": value.model_dump(mode="json"),
    }


def decode_payload(kind: ArtifactKind, raw: Any) -> BaseModel:
    """Validate a stored envelope and return the artifact model.

    Raises
    ------
    CorruptPayload
        If the envelope is malformed, tagged for another kind or version, or
        its data fails schema validation.
    """
    if not isinstance(raw, dict):
        raise CorruptPayload(f"{kind.value} payload is not an object")
    if raw.get("kind") != kind.value:
        raise CorruptPayload(
            f"Payload tagged {raw.get('kind')!r}, expected {kind.value!r}"
        )
    if raw.get("schema_version") != SCHEMA_VERSION:
        raise CorruptPayload(
            f"Unsupported {kind.value} schema version {raw.get('schema_version')!r}"
        )
    try:
        return PAYLOAD_SCHEMAS[kind].model_validate(raw.get("data"))
    except PydanticValidationError as e:
        raise CorruptPayload(
            f"{kind.value} payload failed validation",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e
