"""PostgreSQL + pgvector KnowledgeStore implementation."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import JSONB, insert
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from owlmend.db import Base
from owlmend.errors import KnowledgeStoreUnavailableError, VersionConflictError
from owlmend.knowledge.arbitration import ArbitrationPolicy
from owlmend.knowledge.contracts import DEFAULT_MAX_ENUM_VALUES, merge_delta
from owlmend.knowledge.models import (
    ContractDelta,
    ContractField,
    EntryKind,
    ExecutionTrace,
    FieldType,
    KnowledgeEntry,
    KnowledgeFilters,
    MagnitudeStats,
    RecipeStatus,
    ToolContract,
    TransformRecipe,
    TransformRule,
    _now_utc,
)
from owlmend.knowledge.serialization import recipe_from_dict, recipe_to_dict, trace_from_dict, trace_to_dict
from owlmend.knowledge.store import KnowledgeStore
from owlmend.knowledge.store_inmemory import assemble_contract

logger = logging.getLogger(__name__)

EMBEDDING_DIMENSIONS = 256
_MAX_INSERT_RETRIES = 5


class ContractFieldORM(Base):
    """One version of one contract field (contract_fields table)."""

    __tablename__ = "contract_fields"
    __table_args__ = (
        UniqueConstraint("tenant_id", "tool_id", "path", "version", name="uq_contract_fields_version"),
        {"comment": "Append-only version chain of learned tool contract fields."},
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tool_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    path: Mapped[str] = mapped_column(String(512), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    inferred_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    unit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    required_support: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    required_contradictions: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    allowed_values: Mapped[list[str]] = mapped_column(JSONB, nullable=False, server_default="[]")
    enum_stable_observations: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    enum_open: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    minimum: Mapped[float | None] = mapped_column(Float, nullable=True)
    maximum: Mapped[float | None] = mapped_column(Float, nullable=True)
    magnitude: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, server_default="{}")
    support: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    contradictions: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    observation_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    last_observed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_corroborated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    declared: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class TransformRecipeORM(Base):
    """Transformation recipe with outcome counters (transform_recipes table)."""

    __tablename__ = "transform_recipes"
    __table_args__ = {"comment": "Reusable field transformations between semantic concepts."}

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    source_concept: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    target_concept: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source_field: Mapped[str] = mapped_column(String(512), nullable=False)
    target_field: Mapped[str] = mapped_column(String(512), nullable=False)
    tool_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    rule: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, server_default="{}")
    program: Mapped[str | None] = mapped_column(Text, nullable=True)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    status: Mapped[str] = mapped_column(String(20), nullable=False, server_default="candidate")
    version: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class TransformRecipeVersionORM(Base):
    """One immutable version of a recipe (transform_recipe_versions table)."""

    __tablename__ = "transform_recipe_versions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "recipe_id", "version", name="uq_transform_recipe_versions_version"),
        {"comment": "Every version of every transformation recipe; rows are never updated."},
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    recipe_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    snapshot: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class KnowledgeEntryORM(Base):
    """Indexed retrieval document (knowledge_entries table)."""

    __tablename__ = "knowledge_entries"
    __table_args__ = {"comment": "Embedded contract/recipe/trace/guidance documents for retrieval."}

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    tool_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=True)
    ref_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success_rate: Mapped[float] = mapped_column(Float, nullable=False, server_default="0")
    entry_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, nullable=False, server_default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ExecutionTraceORM(Base):
    """Immutable execution trace (execution_traces table)."""

    __tablename__ = "execution_traces"
    __table_args__ = {"comment": "One row per attempted tool call; never updated."}

    id: Mapped[UUID] = mapped_column(primary_key=True)
    tool_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    strategy: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    field_paths: Mapped[list[str]] = mapped_column(JSONB, nullable=False, server_default="[]")
    referenced_paths: Mapped[list[str]] = mapped_column(JSONB, nullable=False, server_default="[]")
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MismatchCounterORM(Base):
    """Repeated-mismatch counter (mismatch_counters table)."""

    __tablename__ = "mismatch_counters"
    __table_args__ = (
        UniqueConstraint("tenant_id", "tool_id", "path", "kind", name="uq_mismatch_counters_key"),
        {"comment": "Counts repeated mismatches per tool field and violation kind."},
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tool_id: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(String(512), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


def _orm_to_field(row: ContractFieldORM) -> ContractField:
    return ContractField(
        tool_id=row.tool_id,
        path=row.path,
        inferred_type=FieldType(row.inferred_type) if row.inferred_type else None,
        unit=row.unit,
        required_support=row.required_support,
        required_contradictions=row.required_contradictions,
        allowed_values=list(row.allowed_values or []),
        enum_stable_observations=row.enum_stable_observations,
        enum_open=row.enum_open,
        minimum=row.minimum,
        maximum=row.maximum,
        magnitude=MagnitudeStats.from_dict(row.magnitude),
        support=row.support,
        contradictions=row.contradictions,
        observation_count=row.observation_count,
        last_observed_at=row.last_observed_at,
        last_corroborated_at=row.last_corroborated_at,
        declared=row.declared,
        version=row.version,
        created_at=row.created_at,
    )


def _field_to_orm(item: ContractField, tenant_id: str) -> ContractFieldORM:
    return ContractFieldORM(
        tenant_id=tenant_id,
        tool_id=item.tool_id,
        path=item.path,
        version=item.version,
        inferred_type=item.inferred_type.value if item.inferred_type else None,
        unit=item.unit,
        required_support=item.required_support,
        required_contradictions=item.required_contradictions,
        allowed_values=list(item.allowed_values),
        enum_stable_observations=item.enum_stable_observations,
        enum_open=item.enum_open,
        minimum=item.minimum,
        maximum=item.maximum,
        magnitude=item.magnitude.to_dict(),
        support=item.support,
        contradictions=item.contradictions,
        observation_count=item.observation_count,
        last_observed_at=item.last_observed_at,
        last_corroborated_at=item.last_corroborated_at,
        declared=item.declared,
        created_at=item.created_at,
    )


def _orm_to_recipe(row: TransformRecipeORM) -> TransformRecipe:
    status = row.status if row.status in {s.value for s in RecipeStatus} else RecipeStatus.CANDIDATE.value
    return TransformRecipe(
        id=row.id,
        source_concept=row.source_concept,
        target_concept=row.target_concept,
        source_field=row.source_field,
        target_field=row.target_field,
        tool_id=row.tool_id,
        rule=TransformRule.from_dict(row.rule),
        program=row.program,
        success_count=row.success_count,
        failure_count=row.failure_count,
        status=RecipeStatus(status),
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _orm_to_entry(row: KnowledgeEntryORM) -> KnowledgeEntry:
    return KnowledgeEntry(
        id=row.id,
        kind=EntryKind(row.kind),
        tool_id=row.tool_id,
        text=row.text,
        embedding=list(row.embedding) if row.embedding is not None else None,
        ref_id=row.ref_id,
        success_rate=row.success_rate,
        metadata=dict(row.entry_metadata or {}),
        created_at=row.created_at,
    )


class PostgresKnowledgeStore(KnowledgeStore):
    """KnowledgeStore over PostgreSQL with pgvector similarity search.

    Field versions are inserted optimistically under a unique
    (tenant_id, tool_id, path, version) constraint; a concurrent writer that
    loses the race re-reads the head and merges again.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: str = "default",
        embedding_dimensions: int = EMBEDDING_DIMENSIONS,
        arbitration: ArbitrationPolicy | None = None,
        max_enum_values: int = DEFAULT_MAX_ENUM_VALUES,
    ) -> None:
        self._session_factory = session_factory
        self._tenant_id = tenant_id
        self._embedding_dimensions = embedding_dimensions
        self._arbitration = arbitration or ArbitrationPolicy()
        self._max_enum_values = max_enum_values
        schema_dimensions = self._schema_embedding_dimensions()
        if schema_dimensions is not None and schema_dimensions != embedding_dimensions:
            raise ValueError(
                "PostgresKnowledgeStore embedding_dimensions does not match knowledge_entries.embedding "
                f"schema dimensions ({embedding_dimensions} != {schema_dimensions})"
            )

    @staticmethod
    def _schema_embedding_dimensions() -> int | None:
        vector_type = KnowledgeEntryORM.__table__.c.embedding.type
        return getattr(vector_type, "dim", None) or getattr(vector_type, "dimensions", None)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as exc:
            raise KnowledgeStoreUnavailableError(f"knowledge store unavailable: {type(exc).__name__}") from exc

    async def _latest_field(self, session: AsyncSession, tool_id: str, path: str) -> ContractField | None:
        q = (
            select(ContractFieldORM)
            .where(
                and_(
                    ContractFieldORM.tenant_id == self._tenant_id,
                    ContractFieldORM.tool_id == tool_id,
                    ContractFieldORM.path == path,
                )
            )
            .order_by(ContractFieldORM.version.desc())
            .limit(1)
        )
        row = (await session.execute(q)).scalars().first()
        return _orm_to_field(row) if row is not None else None

    async def upsert_contract(self, delta: ContractDelta) -> ToolContract:
        for attempt in range(1, _MAX_INSERT_RETRIES + 1):
            async with self._session() as session:
                current = await self._latest_field(session, delta.tool_id, delta.path)
                nxt = merge_delta(current, delta, max_enum_values=self._max_enum_values)
                session.add(_field_to_orm(nxt, self._tenant_id))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.debug(
                        "contract version race on %s:%s (attempt %s)", delta.tool_id, delta.path, attempt
                    )
                    continue
            contract = await self.get_contract(delta.tool_id)
            assert contract is not None
            return contract
        raise VersionConflictError(delta.tool_id, delta.path, delta.expected_version or 0, -1)

    async def get_contract(self, tool_id: str) -> ToolContract | None:
        latest_versions = (
            select(
                ContractFieldORM.path.label("path"),
                func.max(ContractFieldORM.version).label("version"),
            )
            .where(and_(ContractFieldORM.tenant_id == self._tenant_id, ContractFieldORM.tool_id == tool_id))
            .group_by(ContractFieldORM.path)
            .subquery()
        )
        q = select(ContractFieldORM).join(
            latest_versions,
            and_(
                ContractFieldORM.path == latest_versions.c.path,
                ContractFieldORM.version == latest_versions.c.version,
            ),
        ).where(and_(ContractFieldORM.tenant_id == self._tenant_id, ContractFieldORM.tool_id == tool_id))
        async with self._session() as session:
            rows = (await session.execute(q)).scalars().all()
        return assemble_contract(tool_id, [_orm_to_field(r) for r in rows])

    async def contract_history(self, tool_id: str, path: str) -> list[ContractField]:
        q = (
            select(ContractFieldORM)
            .where(
                and_(
                    ContractFieldORM.tenant_id == self._tenant_id,
                    ContractFieldORM.tool_id == tool_id,
                    ContractFieldORM.path == path,
                )
            )
            .order_by(ContractFieldORM.version.asc())
        )
        async with self._session() as session:
            rows = (await session.execute(q)).scalars().all()
        return [_orm_to_field(r) for r in rows]

    async def query(
        self,
        embedding: list[float],
        filters: KnowledgeFilters | None = None,
        k: int = 5,
    ) -> list[tuple[KnowledgeEntry, float]]:
        if k <= 0:
            return []
        if len(embedding) != self._embedding_dimensions:
            raise ValueError(
                f"query embedding length must be {self._embedding_dimensions}, got {len(embedding)}"
            )
        conditions = [KnowledgeEntryORM.tenant_id == self._tenant_id, KnowledgeEntryORM.embedding.is_not(None)]
        if filters is not None:
            if filters.kinds:
                conditions.append(KnowledgeEntryORM.kind.in_([k_.value for k_ in filters.kinds]))
            if filters.tool_scope is not None:
                scope = KnowledgeEntryORM.tool_id == filters.tool_scope
                if filters.include_global:
                    scope = or_(scope, KnowledgeEntryORM.tool_id.is_(None))
                conditions.append(scope)
        dist_col = KnowledgeEntryORM.embedding.cosine_distance(embedding).label("cosine_dist")
        q = (
            select(KnowledgeEntryORM, dist_col)
            .where(and_(*conditions))
            .order_by(dist_col, KnowledgeEntryORM.created_at.desc(), KnowledgeEntryORM.success_rate.desc())
            .limit(k)
        )
        async with self._session() as session:
            rows = list((await session.execute(q)).all())
        # pgvector cosine_distance is 1 - cosine similarity.
        return [(_orm_to_entry(row), 1.0 - float(dist or 0.0)) for row, dist in rows]

    async def put_entry(self, entry: KnowledgeEntry) -> UUID:
        if entry.embedding is not None and len(entry.embedding) != self._embedding_dimensions:
            raise ValueError(
                f"entry.embedding length must be {self._embedding_dimensions}, got {len(entry.embedding)}"
            )
        async with self._session() as session:
            session.add(
                KnowledgeEntryORM(
                    id=entry.id,
                    tenant_id=self._tenant_id,
                    kind=entry.kind.value,
                    tool_id=entry.tool_id,
                    text=entry.text,
                    embedding=entry.embedding,
                    ref_id=entry.ref_id,
                    success_rate=entry.success_rate,
                    entry_metadata=dict(entry.metadata),
                    created_at=entry.created_at,
                )
            )
            await session.commit()
        return entry.id

    async def record_trace(self, trace: ExecutionTrace) -> UUID:
        referenced = sorted({*trace.field_paths, *trace.absent_paths, *(str(v.get("path")) for v in trace.violations)})
        stmt = (
            insert(ExecutionTraceORM)
            .values(
                id=trace.id,
                tenant_id=self._tenant_id,
                tool_id=trace.tool_id,
                session_id=trace.session_id,
                outcome=trace.outcome.value,
                strategy=trace.strategy,
                status_code=trace.status_code,
                latency_ms=trace.latency_ms,
                field_paths=list(trace.field_paths),
                referenced_paths=referenced,
                payload=trace_to_dict(trace),
                created_at=trace.created_at,
            )
            .on_conflict_do_nothing(index_elements=["id"])
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()
        return trace.id

    async def list_traces(
        self,
        tool_id: str,
        path: str | None = None,
        limit: int = 50,
    ) -> list[ExecutionTrace]:
        conditions = [ExecutionTraceORM.tenant_id == self._tenant_id, ExecutionTraceORM.tool_id == tool_id]
        if path is not None:
            conditions.append(ExecutionTraceORM.referenced_paths.contains([path]))
        q = select(ExecutionTraceORM).where(and_(*conditions)).order_by(ExecutionTraceORM.created_at.desc()).limit(limit)
        async with self._session() as session:
            rows = (await session.execute(q)).scalars().all()
        return [trace_from_dict(r.payload) for r in rows]

    def _recipe_conditions(
        self,
        tool_id: str | None,
        source_concept: str | None,
        target_concept: str | None,
    ) -> list[Any]:
        conditions: list[Any] = [TransformRecipeORM.tenant_id == self._tenant_id]
        if tool_id is None:
            conditions.append(TransformRecipeORM.tool_id.is_(None))
        else:
            conditions.append(or_(TransformRecipeORM.tool_id == tool_id, TransformRecipeORM.tool_id.is_(None)))
        if source_concept is not None:
            conditions.append(TransformRecipeORM.source_concept == source_concept)
        if target_concept is not None:
            conditions.append(TransformRecipeORM.target_concept == target_concept)
        return conditions

    async def list_recipes(
        self,
        tool_id: str | None = None,
        source_concept: str | None = None,
        target_concept: str | None = None,
    ) -> list[TransformRecipe]:
        q = select(TransformRecipeORM).where(and_(*self._recipe_conditions(tool_id, source_concept, target_concept)))
        async with self._session() as session:
            rows = (await session.execute(q)).scalars().all()
        return self._arbitration.rank([_orm_to_recipe(r) for r in rows], tool_id)

    async def get_recipe(
        self,
        source_concept: str,
        target_concept: str,
        tool_id: str | None = None,
        *,
        trusted_only: bool = False,
    ) -> TransformRecipe | None:
        candidates = await self.list_recipes(tool_id, source_concept, target_concept)
        return self._arbitration.select(candidates, tool_id, trusted_only=trusted_only)

    async def get_recipe_by_id(self, recipe_id: UUID) -> TransformRecipe | None:
        q = select(TransformRecipeORM).where(
            and_(TransformRecipeORM.tenant_id == self._tenant_id, TransformRecipeORM.id == recipe_id)
        )
        async with self._session() as session:
            row = (await session.execute(q)).scalars().first()
        return _orm_to_recipe(row) if row is not None else None

    async def save_recipe(self, recipe: TransformRecipe) -> UUID:
        async with self._session() as session:
            head = (
                await session.execute(
                    select(TransformRecipeORM)
                    .where(and_(TransformRecipeORM.tenant_id == self._tenant_id, TransformRecipeORM.id == recipe.id))
                    .with_for_update()
                )
            ).scalars().first()
            stored = replace(recipe)
            if head is not None:
                stored.version = max(recipe.version, head.version + 1)
                stored.created_at = head.created_at
            values = {
                "tenant_id": self._tenant_id,
                "source_concept": stored.source_concept,
                "target_concept": stored.target_concept,
                "source_field": stored.source_field,
                "target_field": stored.target_field,
                "tool_id": stored.tool_id,
                "rule": stored.rule.to_dict(),
                "program": stored.program,
                "success_count": stored.success_count,
                "failure_count": stored.failure_count,
                "status": stored.status.value,
                "version": stored.version,
                "created_at": stored.created_at,
                "updated_at": stored.updated_at,
            }
            stmt = insert(TransformRecipeORM).values(id=stored.id, **values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={k: v for k, v in values.items() if k not in {"tenant_id", "created_at"}},
            )
            await session.execute(stmt)
            session.add(self._version_row(stored))
            await session.commit()
        return recipe.id

    async def record_recipe_outcome(self, recipe_id: UUID, success: bool) -> TransformRecipe | None:
        counter = TransformRecipeORM.success_count if success else TransformRecipeORM.failure_count
        stmt = (
            update(TransformRecipeORM)
            .where(and_(TransformRecipeORM.tenant_id == self._tenant_id, TransformRecipeORM.id == recipe_id))
            .values(
                {
                    counter: counter + 1,
                    TransformRecipeORM.version: TransformRecipeORM.version + 1,
                    TransformRecipeORM.updated_at: _now_utc(),
                }
            )
            .returning(TransformRecipeORM)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            if row is None:
                await session.rollback()
                return None
            recipe = _orm_to_recipe(row)
            status = self._arbitration.evaluate_status(recipe)
            if status != recipe.status:
                await session.execute(
                    update(TransformRecipeORM)
                    .where(TransformRecipeORM.id == recipe_id)
                    .values(status=status.value)
                )
                recipe.status = status
            session.add(self._version_row(recipe))
            await session.commit()
        return recipe

    async def recipe_history(self, recipe_id: UUID) -> list[TransformRecipe]:
        q = (
            select(TransformRecipeVersionORM)
            .where(
                and_(
                    TransformRecipeVersionORM.tenant_id == self._tenant_id,
                    TransformRecipeVersionORM.recipe_id == recipe_id,
                )
            )
            .order_by(TransformRecipeVersionORM.version)
        )
        async with self._session() as session:
            rows = (await session.execute(q)).scalars().all()
        return [recipe_from_dict(r.snapshot) for r in rows]

    def _version_row(self, recipe: TransformRecipe) -> TransformRecipeVersionORM:
        return TransformRecipeVersionORM(
            tenant_id=self._tenant_id,
            recipe_id=recipe.id,
            version=recipe.version,
            status=recipe.status.value,
            snapshot=recipe_to_dict(recipe),
        )

    async def increment_mismatch(self, tool_id: str, path: str, kind: str) -> int:
        stmt = (
            insert(MismatchCounterORM)
            .values(tenant_id=self._tenant_id, tool_id=tool_id, path=path, kind=kind, count=1)
            .on_conflict_do_update(
                constraint="uq_mismatch_counters_key",
                set_={"count": MismatchCounterORM.count + 1, "updated_at": func.now()},
            )
            .returning(MismatchCounterORM.count)
        )
        async with self._session() as session:
            count = (await session.execute(stmt)).scalar_one()
            await session.commit()
        return int(count)
