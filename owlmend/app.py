"""OwlMend main application class."""

from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from owlmend.config import (
    ConfigManager,
    OwlMendConfig,
    register_feedback_reload_listener,
    register_repair_reload_listener,
    register_retrieval_reload_listener,
)
from owlmend.detection import DetectionPolicy, MismatchDetector, violations_from_response
from owlmend.errors import InvalidCallError
from owlmend.feedback import FeedbackWriter
from owlmend.integrations.llm import LLMClient, LLMConfig
from owlmend.knowledge import (
    ArbitrationPolicy,
    ExecutionTrace,
    InMemoryKnowledgeStore,
    KnowledgeStore,
    ToolContract,
    TraceOutcome,
    TransformRecipe,
    flatten_payload,
)
from owlmend.knowledge.models import RecipeStatus
from owlmend.knowledge.serialization import recipe_from_dict
from owlmend.repair import (
    LLMCollaborator,
    ModelCollaborator,
    RateLimitedCollaborator,
    RepairOrchestrator,
    RepairOutcome,
    RepairPolicy,
    build_strategies,
)
from owlmend.retrieval import EmbeddingProvider, RetrievalEngine, create_embedder
from owlmend.sandbox import SandboxExecutor

logger = logging.getLogger(__name__)

_RECENT_REPAIRS_CAPACITY = 1024


def _require_tool_id(tool_id: Any) -> str:
    if not isinstance(tool_id, str) or not tool_id.strip():
        raise InvalidCallError("tool_id must be a non-empty string")
    return tool_id.strip()


def _require_payload(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, Mapping):
        raise InvalidCallError(f"proposed call must be a mapping, got {type(payload).__name__}")
    return dict(payload)


def _fingerprint(tool_id: str, payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(f"{tool_id}\n{encoded}".encode()).hexdigest()


class OwlMend:
    """OwlMend application: validate, repair and learn from tool calls.

    Usage::

        from owlmend.app import OwlMend

        async with OwlMend.from_config() as mend:
            await mend.declare_contract("payments.create", {"user_id": "string", "amount_cents": "integer"})
            outcome = await mend.validate_and_repair({"user": "abc123", "amt": "19.99"}, "payments.create")
            if outcome.ok:
                response = call_tool(outcome.final_payload)
                await mend.report_real_execution("payments.create", outcome.final_payload, response.status)
    """

    def __init__(
        self,
        store: KnowledgeStore,
        *,
        config: OwlMendConfig | None = None,
        embedder: EmbeddingProvider | None = None,
        collaborator: ModelCollaborator | None = None,
        sandbox: SandboxExecutor | None = None,
        engine: Any = None,
    ) -> None:
        self.config = config or OwlMendConfig()
        cfg = self.config
        self.store = store
        self._engine = engine
        self.retrieval = RetrievalEngine(
            store,
            embedder or create_embedder(cfg.retrieval),
            default_top_k=cfg.retrieval.default_top_k,
            max_top_k=cfg.retrieval.max_top_k,
            timeout_seconds=cfg.retrieval.timeout_seconds,
            enable_tfidf_fallback=cfg.retrieval.enable_tfidf_fallback,
        )
        self.collaborator = collaborator or self._default_collaborator(cfg)
        self.sandbox = sandbox or SandboxExecutor.from_config(cfg.sandbox)
        self.feedback = FeedbackWriter.from_config(store, cfg, self.retrieval)
        self.orchestrator = RepairOrchestrator(
            store,
            MismatchDetector(DetectionPolicy.from_config(cfg.detection)),
            self._build_strategies(cfg),
            retrieval=self.retrieval,
            feedback=self.feedback,
            store_timeout_seconds=cfg.knowledge.store_timeout_seconds,
        )
        self._recent_repairs: OrderedDict[str, tuple[UUID, ...]] = OrderedDict()
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: OwlMendConfig | None = None,
        *,
        store: KnowledgeStore | None = None,
        embedder: EmbeddingProvider | None = None,
        collaborator: ModelCollaborator | None = None,
    ) -> OwlMend:
        """Build every component from configuration.

        Without an explicit config the ConfigManager singleton is used and its
        hot-reloadable sections are wired to the new instance.
        """
        watch = config is None
        cfg = config or ConfigManager.instance().get()
        engine = None
        if store is None:
            store, engine = cls._create_store(cfg)
        app = cls(store, config=cfg, embedder=embedder, collaborator=collaborator, engine=engine)
        if watch:
            app.watch_config()
        return app

    @staticmethod
    def _create_store(cfg: OwlMendConfig) -> tuple[KnowledgeStore, Any]:
        arbitration = ArbitrationPolicy.from_config(cfg.repair.arbitration)
        if cfg.knowledge.backend == "postgres":
            from owlmend.db import create_engine, create_session_factory
            from owlmend.knowledge.store_pgvector import PostgresKnowledgeStore

            engine = create_engine(cfg.knowledge.database_url)
            store = PostgresKnowledgeStore(
                create_session_factory(engine),
                tenant_id=cfg.knowledge.tenant_id,
                embedding_dimensions=cfg.retrieval.embedding_dimensions,
                arbitration=arbitration,
                max_enum_values=cfg.knowledge.max_enum_values,
            )
            return store, engine
        return InMemoryKnowledgeStore(arbitration=arbitration, max_enum_values=cfg.knowledge.max_enum_values), None

    @staticmethod
    def _default_collaborator(cfg: OwlMendConfig) -> ModelCollaborator:
        llm = cfg.integrations.llm
        client = LLMClient(LLMConfig.from_integration_config(llm))
        return RateLimitedCollaborator(
            LLMCollaborator(client),
            max_concurrent=llm.max_concurrent,
            min_interval_seconds=llm.min_interval_seconds,
        )

    def _build_strategies(self, cfg: OwlMendConfig) -> list[Any]:
        return build_strategies(
            RepairPolicy.from_config(cfg.repair, cfg.knowledge.store_timeout_seconds),
            store=self.store,
            retrieval=self.retrieval,
            collaborator=self.collaborator,
            sandbox=self.sandbox,
            arbitration=ArbitrationPolicy.from_config(cfg.repair.arbitration),
        )

    def apply_repair_config(self, cfg: OwlMendConfig) -> None:
        """Hot-apply detection and repair settings to subsequent calls."""
        self.config = cfg
        self.orchestrator.reconfigure(
            detector=MismatchDetector(DetectionPolicy.from_config(cfg.detection)),
            strategies=self._build_strategies(cfg),
        )
        logger.info("Applied detection/repair configuration (strategies: %s)", ", ".join(cfg.repair.strategies))

    def watch_config(self, manager: ConfigManager | None = None) -> None:
        """Follow hot reloads of the detection, repair, retrieval and feedback sections."""
        register_repair_reload_listener(self, manager)
        register_retrieval_reload_listener(self.retrieval, manager)
        register_feedback_reload_listener(self.feedback, manager)

    async def start(self) -> None:
        """Start the feedback writer."""
        if self._started:
            return
        await self.feedback.start()
        self._started = True

    async def stop(self) -> None:
        """Drain feedback, then release the store and engine."""
        await self.feedback.stop()
        await self.store.close()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        self._started = False

    async def __aenter__(self) -> OwlMend:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.stop()

    async def validate_and_repair(
        self,
        proposed_call: Mapping[str, Any],
        tool_id: str,
        context: Mapping[str, Any] | None = None,
    ) -> RepairOutcome:
        """Validate a proposed call and repair it when possible.

        Only malformed input raises (InvalidCallError); every other failure is
        reported through the returned outcome.
        """
        payload = _require_payload(proposed_call)
        tool = _require_tool_id(tool_id)
        if context is not None and not isinstance(context, Mapping):
            raise InvalidCallError("context must be a mapping")
        outcome = await self.orchestrator.run(tool, payload, dict(context or {}))
        if outcome.final_payload is not None and outcome.trace is not None and outcome.trace.applied_recipe_ids:
            self._remember(tool, outcome.final_payload, outcome.trace.applied_recipe_ids)
        return outcome

    def _remember(self, tool_id: str, payload: dict[str, Any], recipe_ids: tuple[UUID, ...]) -> None:
        key = _fingerprint(tool_id, payload)
        self._recent_repairs[key] = recipe_ids
        self._recent_repairs.move_to_end(key)
        while len(self._recent_repairs) > _RECENT_REPAIRS_CAPACITY:
            self._recent_repairs.popitem(last=False)

    async def report_real_execution(
        self,
        tool_id: str,
        payload: Mapping[str, Any],
        http_status: int,
        response_body: Any = None,
    ) -> None:
        """Close the loop with the real API's answer to an emitted call."""
        tool = _require_tool_id(tool_id)
        data = _require_payload(payload)
        if isinstance(http_status, bool) or not isinstance(http_status, int):
            raise InvalidCallError("http_status must be an integer")
        linked = self._recent_repairs.pop(_fingerprint(tool, data), ())

        if 200 <= http_status < 300:
            contract = await self.orchestrator.load_contract(tool)
            report = self.orchestrator.detector.detect(data, contract, tool)
            trace = ExecutionTrace(
                tool_id=tool,
                outcome=TraceOutcome.REAL_SUCCESS,
                original_payload=data,
                report={"tool_id": tool, "source": "real_execution", "violations": []},
                final_payload=data,
                status_code=http_status,
                applied_recipe_ids=linked,
                field_paths=tuple(sorted(flatten_payload(data))),
                absent_paths=tuple(report.absent_required_paths),
            )
        elif 400 <= http_status < 500:
            violations = violations_from_response(response_body, data)
            trace = ExecutionTrace(
                tool_id=tool,
                outcome=TraceOutcome.REAL_FAILURE,
                original_payload=data,
                report={
                    "tool_id": tool,
                    "source": "real_execution",
                    "violations": [v.to_dict() for v in violations],
                },
                status_code=http_status,
                error=f"HTTP {http_status}",
                applied_recipe_ids=linked,
                field_paths=tuple(sorted(flatten_payload(data))),
            )
        else:
            # Server-side errors say nothing about the payload's shape.
            logger.info("Real execution of %s returned %d; recorded without learning", tool, http_status)
            trace = ExecutionTrace(
                tool_id=tool,
                outcome=TraceOutcome.REAL_FAILURE,
                original_payload=data,
                report={"tool_id": tool, "source": "real_execution", "violations": []},
                status_code=http_status,
                error=f"HTTP {http_status}",
            )
        self.feedback.commit(trace)

    async def query_guidance(
        self,
        concept_query: str,
        tool_scope: str | None = None,
        top_k: int | None = None,
    ) -> list[str]:
        """Grounding snippets for the planner; empty when retrieval is unavailable."""
        if not isinstance(concept_query, str) or not concept_query.strip():
            raise InvalidCallError("concept_query must be a non-empty string")
        return await self.retrieval.guidance(concept_query, tool_scope=tool_scope, top_k=top_k)

    async def declare_contract(self, tool_id: str, schema: Any) -> ToolContract | None:
        """Declare a tool's schema (JSON Schema or simplified ``{field: type}``)."""
        tool = _require_tool_id(tool_id)
        try:
            return await self.feedback.declare_contract(tool, schema)
        except ValueError as exc:
            raise InvalidCallError(f"invalid schema for {tool}: {exc}") from exc

    async def declare_recipe(
        self,
        recipe: TransformRecipe | Mapping[str, Any],
        *,
        trusted: bool | None = None,
    ) -> TransformRecipe:
        """Seed a transformation recipe; ``trusted=True`` makes it eligible for direct substitution."""
        if isinstance(recipe, Mapping):
            try:
                recipe = recipe_from_dict(dict(recipe))
            except (KeyError, TypeError, ValueError) as exc:
                raise InvalidCallError(f"invalid recipe: {exc}") from exc
        if trusted is True:
            recipe.status = RecipeStatus.TRUSTED
        elif trusted is False:
            recipe.status = RecipeStatus.CANDIDATE
        try:
            return await self.feedback.declare_recipe(recipe)
        except ValueError as exc:
            raise InvalidCallError(f"invalid recipe: {exc}") from exc
