"""HMM model versions repository using SQLAlchemy ORM.

Versions are append-only: training always inserts a new row and nothing
ever updates an existing one.
"""

from __future__ import annotations

import dataclasses

import numpy as np
from sqlalchemy import select

from portfolio_analytics.core.config import settings
from portfolio_analytics.core.exceptions import ConflictError
from portfolio_analytics.core.logging import get_logger
from portfolio_analytics.database.connection import get_session
from portfolio_analytics.database.orm import HmmModelVersion
from portfolio_analytics.quant_engine.hmm import DiscretizationScheme, HmmModel

from .stores import HmmModelStore


logger = get_logger("repositories.hmm_models_orm")


def _to_model(row: HmmModelVersion) -> HmmModel:
    return HmmModel(
        market=row.market,
        states=tuple(row.state_names),
        transition=np.asarray(row.transition_matrix, dtype=float),
        emission=np.asarray(row.emission_matrix, dtype=float),
        initial=np.asarray(row.initial_distribution, dtype=float),
        scheme=DiscretizationScheme.from_dict(row.discretization),
        training_start=row.training_start,
        training_end=row.training_end,
        trained_at=row.trained_at,
        accuracy=row.accuracy,
        validation_log_likelihood=row.validation_log_likelihood,
        iterations=row.iterations,
        converged=row.converged,
        version=row.version,
        id=row.id,
        tolerance=settings.probability_tolerance,
    )


async def save_model(model: HmmModel) -> HmmModel:
    """Insert a new model version."""
    version = model.version or model.trained_at.strftime("%Y%m%dT%H%M%S")
    async with get_session() as session:
        existing = await session.execute(
            select(HmmModelVersion.id).where(
                HmmModelVersion.market == model.market,
                HmmModelVersion.version == version,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"HMM model {model.market}@{version} already exists")

        row = HmmModelVersion(
            market=model.market,
            version=version,
            trained_at=model.trained_at,
            training_start=model.training_start,
            training_end=model.training_end,
            state_names=list(model.states),
            transition_matrix=model.transition.tolist(),
            emission_matrix=model.emission.tolist(),
            initial_distribution=model.initial.tolist(),
            discretization=model.scheme.to_dict(),
            accuracy=float(model.accuracy),
            validation_log_likelihood=model.validation_log_likelihood,
            iterations=model.iterations,
            converged=model.converged,
        )
        session.add(row)
        await session.commit()
        await session.refresh(row)

    logger.info(f"Saved HMM model {model.market}@{version} (id={row.id})")
    return dataclasses.replace(model, id=row.id, version=version)


async def get_latest_model(market: str) -> HmmModel | None:
    async with get_session() as session:
        result = await session.execute(
            select(HmmModelVersion)
            .where(HmmModelVersion.market == market.upper())
            .order_by(HmmModelVersion.trained_at.desc(), HmmModelVersion.id.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _to_model(row) if row else None


class SqlHmmModelStore(HmmModelStore):

    async def save(self, model: HmmModel) -> HmmModel:
        return await save_model(model)

    async def latest(self, market: str) -> HmmModel | None:
        return await get_latest_model(market)
