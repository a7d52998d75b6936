# capsules/orchestrator.py
"""
Two-phase capsule pipeline.

Phase A, ``base_analysis(path)``: hash the bytes, serve from cache when possible,
otherwise run the StaticAnalyzer once and store a base capsule. Failures raise
``AnalysisError``; there is no degraded base capsule.

Phase B, ``enrich(capsule)``: ask the EnrichmentProvider (through the retry
policy) for narrative fields and store a new capsule under the same content
hash. Never raises: on any failure the input capsule is returned unchanged.

Concurrent ``enrich`` calls for the same content hash share one provider call
when ``single_flight`` is on.
"""
from __future__ import annotations

import asyncio
import inspect
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from capsules.cache import CacheStats, CapsuleCache
from capsules.config import DEFAULT_CONFIG, resolve_cache_dir
from capsules.enrichment import EnrichmentProvider, build_enrichment_input, parse_enrichment_response
from capsules.errors import AnalysisError, Err, ErrorCode, Ok, Result, classify_error, log_analysis_error
from capsules.facts import build_base_summary, build_facts
from capsules.hashing import content_hash, hash_file
from capsules.logger import get_logger
from capsules.models import AnalysisOptions, Capsule, EnrichmentResult, now_iso
from capsules.retry import RetryPolicy
from capsules.static_analyzer import RegexStaticAnalyzer, StaticAnalyzer, sample_inbound

logger = get_logger("capsules.orchestrator")

PathLike = Union[str, Path]
ProviderFactory = Callable[[], EnrichmentProvider]


def _default_provider_factory(cfg: Dict[str, Any]) -> ProviderFactory:
    def factory() -> EnrichmentProvider:
        from capsules.llm_client import OpenAIEnrichmentProvider

        return OpenAIEnrichmentProvider.from_config(cfg)

    return factory


def _log_user_action(err: AnalysisError) -> None:
    logger.error(
        "enrichment needs user action",
        ctx={"code": err.code.value, "notice": err.to_user_message(), "actions": err.user_actions()},
    )


class AnalysisOrchestrator:
    def __init__(
        self,
        cache: Optional[CapsuleCache] = None,
        static_analyzer: Optional[StaticAnalyzer] = None,
        *,
        provider: Optional[EnrichmentProvider] = None,
        provider_factory: Optional[ProviderFactory] = None,
        config: Optional[Dict[str, Any]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        workspace_root: Optional[PathLike] = None,
        on_user_action: Optional[Callable[[AnalysisError], None]] = None,
    ) -> None:
        self.config: Dict[str, Any] = config if config is not None else dict(DEFAULT_CONFIG)
        enr = self.config.get("enrichment") or {}
        analysis = self.config.get("analysis") or {}

        self.cache = cache if cache is not None else CapsuleCache()
        self.static_analyzer: StaticAnalyzer = static_analyzer or RegexStaticAnalyzer()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.workspace_root = Path(workspace_root) if workspace_root else None
        self.enrichment_enabled = bool(enr.get("enabled", True))
        self.single_flight = bool(enr.get("single_flight", True))
        self.inbound_limit = int(analysis.get("inbound_sample_limit", 10))
        self.inbound_max_files = int(analysis.get("inbound_scan_max_files", 2000))
        self.on_user_action = on_user_action or _log_user_action

        self._provider = provider
        self._provider_factory = provider_factory or _default_provider_factory(self.config)
        self._inflight: Dict[str, "asyncio.Task[Capsule]"] = {}

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], project_root: PathLike, **kw: Any) -> "AnalysisOrchestrator":
        cache_cfg = cfg.get("cache") or {}
        cache = CapsuleCache(
            resolve_cache_dir(cfg, Path(project_root)),
            max_memory_entries=cache_cfg.get("max_memory_entries"),
        )
        kw.setdefault("workspace_root", project_root)
        return cls(cache, config=cfg, **kw)

    # ==================== Phase A ====================

    async def base_analysis(self, path: PathLike, options: Optional[AnalysisOptions] = None) -> Capsule:
        """Phase A off the event loop. See ``base_analysis_sync``."""
        return await asyncio.to_thread(self.base_analysis_sync, path, options)

    def base_analysis_sync(self, path: PathLike, options: Optional[AnalysisOptions] = None) -> Capsule:
        """Return the capsule for the file's current bytes, analyzing at most once per hash.

        A cached entry (base or enriched) is served relabeled to ``path``. With
        ``options.force`` the analyzer runs again; an enriched entry keeps its
        narrative fields so the cache never falls back to a base capsule.

        Raises:
            AnalysisError: ``FILE_NOT_FOUND``, ``FILE_READ_ERROR`` or ``PARSE_ERROR``.
                No partial capsule is cached.
        """
        opts = options or AnalysisOptions()
        file = str(path)
        try:
            raw = Path(path).read_bytes()
        except OSError as e:
            raise classify_error(e, ErrorCode.FILE_READ_ERROR, {"path": file}) from e
        h = content_hash(raw)

        if not opts.force:
            cached = self.cache.get(h)
            if cached is not None:
                logger.debug("base capsule served from cache", ctx={"path": file, "content_hash": h})
                return cached.with_file(file) if cached.file != file else cached

        with logger.start_action("static_analysis", ctx={"path": file, "content_hash": h}):
            try:
                static = self.static_analyzer.analyze(path)
            except AnalysisError:
                raise
            except OSError as e:
                raise classify_error(e, ErrorCode.FILE_READ_ERROR, {"path": file}) from e
            except Exception as e:
                raise AnalysisError(str(e), ErrorCode.PARSE_ERROR, context={"path": file}, cause=e) from e

        key = static.content_hash or h
        if key != h:
            logger.info("file changed during analysis; keying by analyzed bytes", ctx={"path": file, "content_hash": key})

        if opts.deep_deps and self.workspace_root is not None:
            try:
                static.deps.in_sample = sample_inbound(
                    self.workspace_root, path, limit=self.inbound_limit, max_files=self.inbound_max_files
                )
            except OSError as e:
                logger.debug("inbound sampling failed", ctx={"path": file, "err": str(e)})

        capsule = Capsule(
            file=file,
            language=static.language,
            content_hash=key,
            summary=build_base_summary(file, static),
            api=static.api,
            deps=static.deps,
            facts=build_facts(static),
            evidence=static.evidence,
            stale=False,
            last_verified_at=now_iso(),
        )
        prior = self.cache.peek(key)
        if prior is not None and prior.is_enriched:
            # an enriched entry never reverts to base; keep its narrative fields
            capsule.summary = dict(prior.summary)
            capsule.inferences = list(prior.inferences)
            capsule.recommendations = list(prior.recommendations)
            capsule.enriched_at = prior.enriched_at
        self.cache.set(key, capsule)
        return capsule

    # ==================== Phase B ====================

    def _get_provider(self) -> Result[EnrichmentProvider, AnalysisError]:
        if self._provider is not None:
            return Ok(self._provider)
        try:
            self._provider = self._provider_factory()
        except Exception as e:
            return Err(classify_error(e, ErrorCode.ENRICHMENT_CLIENT_INIT_FAILED))
        return Ok(self._provider)

    async def _request(self, provider: EnrichmentProvider, capsule: Capsule, content: str) -> Result[EnrichmentResult, AnalysisError]:
        data = build_enrichment_input(capsule, content)

        async def attempt() -> EnrichmentResult:
            raw = provider.analyze(data)
            if inspect.isawaitable(raw):
                raw = await raw
            parsed = parse_enrichment_response(raw)
            if isinstance(parsed, Err):
                raise parsed.error
            return parsed.value

        try:
            value = await self.retry_policy.run(attempt, ctx={"path": capsule.file, "content_hash": capsule.content_hash})
        except AnalysisError as e:
            return Err(e)
        return Ok(value)

    def _degrade(self, err: AnalysisError, capsule: Capsule) -> Capsule:
        err.context.setdefault("path", capsule.file)
        err.context.setdefault("content_hash", capsule.content_hash)
        log_analysis_error(err, "enrichment failed; keeping base capsule")
        if err.needs_user_action():
            self.on_user_action(err)
        return capsule

    async def _enrich_once(self, capsule: Capsule) -> Capsule:
        prov = self._get_provider()
        if isinstance(prov, Err):
            return self._degrade(prov.error, capsule)

        try:
            raw = await asyncio.to_thread(Path(capsule.file).read_bytes)
        except OSError as e:
            return self._degrade(classify_error(e, ErrorCode.FILE_READ_ERROR), capsule)
        if content_hash(raw) != capsule.content_hash:
            logger.info(
                "file changed since base analysis; enrichment skipped",
                ctx={"path": capsule.file, "content_hash": capsule.content_hash},
            )
            return capsule

        with logger.start_action("enrich", ctx={"path": capsule.file, "content_hash": capsule.content_hash}):
            res = await self._request(prov.value, capsule, raw.decode("utf-8", errors="replace"))
        if isinstance(res, Err):
            return self._degrade(res.error, capsule)

        enriched = capsule.copy()
        stamp = now_iso()
        enriched.summary = dict(res.value.summary)
        enriched.inferences = list(res.value.inferences)
        enriched.recommendations = list(res.value.recommendations)
        enriched.last_verified_at = stamp
        enriched.enriched_at = stamp
        enriched.stale = False
        await asyncio.to_thread(self.cache.set, enriched.content_hash, enriched)
        logger.info(
            "capsule enriched",
            ctx={
                "path": capsule.file,
                "content_hash": capsule.content_hash,
                "inferences": len(enriched.inferences),
                "recommendations": len(enriched.recommendations),
            },
        )
        return enriched

    async def enrich(self, capsule: Capsule, options: Optional[AnalysisOptions] = None) -> Capsule:
        """Upgrade ``capsule`` with narrative fields from the provider.

        Returns the input unchanged when enrichment is disabled, when the file changed
        since Phase A, or when the provider fails after retries. Already enriched
        content is served from the cache unless ``options.force`` is set. Never raises
        except on cancellation.

        Args:
            capsule: A capsule from ``base_analysis``.
            options: ``include_ai`` and ``force`` are honoured.

        Returns:
            The enriched capsule relabeled to ``capsule.file``, or ``capsule`` itself.
        """
        opts = options or AnalysisOptions()
        if not self.enrichment_enabled or not opts.include_ai:
            return capsule

        h = capsule.content_hash
        try:
            if not opts.force:
                cached = await asyncio.to_thread(self.cache.peek, h)
                if cached is not None and cached.is_enriched:
                    return cached.with_file(capsule.file)

            if not self.single_flight:
                return await self._enrich_once(capsule)

            task = self._inflight.get(h)
            if task is None:
                task = asyncio.ensure_future(self._enrich_once(capsule))
                self._inflight[h] = task
                task.add_done_callback(lambda _t, key=h: self._inflight.pop(key, None))
                return await asyncio.shield(task)

            logger.debug("joining in-flight enrichment", ctx={"path": capsule.file, "content_hash": h})
            shared = await asyncio.shield(task)
            return shared.with_file(capsule.file) if shared.is_enriched else capsule
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._degrade(classify_error(e, ErrorCode.UNKNOWN_ERROR), capsule)

    # ==================== Combined / management ====================

    async def analyze(self, path: PathLike, options: Optional[AnalysisOptions] = None) -> Capsule:
        """``base_analysis`` followed by ``enrich`` when ``include_ai`` is set."""
        opts = options or AnalysisOptions()
        capsule = await self.base_analysis(path, opts)
        if opts.include_ai:
            capsule = await self.enrich(capsule, opts)
        return capsule

    def invalidate(self, path: PathLike) -> bool:
        """Drop the cache entry for the file's current content."""
        try:
            h = hash_file(path)
        except OSError as e:
            raise classify_error(e, ErrorCode.FILE_READ_ERROR, {"path": str(path)}) from e
        removed = self.cache.delete(h)
        logger.info("cache entry invalidated", ctx={"path": str(path), "content_hash": h, "removed": removed})
        return removed

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("capsule cache cleared")

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()
