"""Read-through, thread-safe cache for workflow, stage and activity templates."""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from typing import Any

import msgspec

from stageflow.application.port import Repositories
from stageflow.domain.entity import ActivityTemplate, StageTemplate, WorkflowTemplate
from stageflow.domain.error import NotFoundError, PreloadError, StageflowError
from stageflow.domain.service import sort_by_order_index
from stageflow.domain.value_object import RequestContext

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0

_WORKFLOW_TEMPLATE = "workflow_template"
_STAGE_TEMPLATES = "stage_templates"
_STAGE_TEMPLATE = "stage_template"
_ACTIVITY_TEMPLATES = "activity_templates"
_ACTIVITY_TEMPLATE = "activity_template"


class CacheStats(msgspec.Struct, kw_only=True):
    """Snapshot of the cache contents."""

    workflow_templates: int = 0
    stage_template_lists: int = 0
    stage_templates: int = 0
    activity_template_lists: int = 0
    activity_templates: int = 0
    expired: int = 0
    hits: int = 0
    misses: int = 0
    ttl_seconds: float = DEFAULT_TTL_SECONDS


class _Entry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float):
        self.value = value
        self.expires_at = expires_at


class TemplateCache:
    """Caches template reads in front of the template repositories.

    Concurrent misses on one key share a single repository read: the first
    caller loads while the others wait on the same future. Not-found results
    and repository errors are never cached.

    :param repositories: The repository ports to read through to
    :type repositories: Repositories
    :param ttl_seconds: How long an entry stays fresh
    :type ttl_seconds: float
    :param clock: Monotonic time source, in seconds
    """

    def __init__(
        self,
        repositories: Repositories,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self.repositories = repositories
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], _Entry] = {}
        self._inflight: dict[tuple[str, str], Future] = {}
        self._hits = 0
        self._misses = 0

    def get_workflow_template(self, ctx: RequestContext, template_id: str) -> WorkflowTemplate:
        """
        Get a workflow template by id.

        :param ctx: The caller's request context
        :type ctx: RequestContext
        :param template_id: The workflow template id
        :type template_id: str
        :returns: The workflow template
        :rtype: WorkflowTemplate
        :raises NotFoundError: If no such template exists
        """

        def load() -> WorkflowTemplate:
            ctx.check()
            template = self.repositories.workflow_template.read(ctx, template_id).first()
            if template is None:
                raise NotFoundError("Workflow template", template_id)
            return template

        return self._get((_WORKFLOW_TEMPLATE, template_id), load)

    def get_stage_templates(self, ctx: RequestContext, workflow_template_id: str) -> list[StageTemplate]:
        """
        Get the stage templates of a workflow template, sorted ascending by
        order index (ties by id, missing index last). An empty list is valid.

        :param ctx: The caller's request context
        :type ctx: RequestContext
        :param workflow_template_id: The owning workflow template id
        :type workflow_template_id: str
        :returns: The sorted stage templates
        :rtype: list[StageTemplate]
        """

        def load() -> list[StageTemplate]:
            ctx.check()
            result = self.repositories.stage_template.list(ctx, workflow_template_id=workflow_template_id)
            return sort_by_order_index(result.data)

        return list(self._get((_STAGE_TEMPLATES, workflow_template_id), load))

    def get_stage_template(self, ctx: RequestContext, stage_template_id: str) -> StageTemplate:
        def load() -> StageTemplate:
            ctx.check()
            template = self.repositories.stage_template.read(ctx, stage_template_id).first()
            if template is None:
                raise NotFoundError("Stage template", stage_template_id)
            return template

        return self._get((_STAGE_TEMPLATE, stage_template_id), load)

    def get_activity_templates(self, ctx: RequestContext, stage_template_id: str) -> list[ActivityTemplate]:
        """
        Get the activity templates of a stage template, sorted like stage templates.

        :param ctx: The caller's request context
        :type ctx: RequestContext
        :param stage_template_id: The owning stage template id
        :type stage_template_id: str
        :returns: The sorted activity templates
        :rtype: list[ActivityTemplate]
        """

        def load() -> list[ActivityTemplate]:
            ctx.check()
            result = self.repositories.activity_template.list(ctx, stage_template_id=stage_template_id)
            return sort_by_order_index(result.data)

        return list(self._get((_ACTIVITY_TEMPLATES, stage_template_id), load))

    def get_activity_template(self, ctx: RequestContext, activity_template_id: str) -> ActivityTemplate:
        def load() -> ActivityTemplate:
            ctx.check()
            template = self.repositories.activity_template.read(ctx, activity_template_id).first()
            if template is None:
                raise NotFoundError("Activity template", activity_template_id)
            return template

        return self._get((_ACTIVITY_TEMPLATE, activity_template_id), load)

    def invalidate(self, template_id: str) -> int:
        """
        Drop every entry keyed by ``template_id``, whatever its kind.

        :param template_id: A workflow, stage or activity template id
        :type template_id: str
        :returns: The number of entries dropped
        :rtype: int
        """
        with self._lock:
            keys = [key for key in self._entries if key[1] == template_id]
            for key in keys:
                del self._entries[key]
            for key in [key for key in self._inflight if key[1] == template_id]:
                del self._inflight[key]
        logger.debug("Invalidated %d cache entries for %s", len(keys), template_id)
        return len(keys)

    def invalidate_workflow_template(self, workflow_template_id: str) -> int:
        """
        Drop a workflow template, its stage template list and its cached stage templates.

        :param workflow_template_id: The workflow template id
        :type workflow_template_id: str
        :returns: The number of entries dropped
        :rtype: int
        """
        with self._lock:
            keys = [(_WORKFLOW_TEMPLATE, workflow_template_id), (_STAGE_TEMPLATES, workflow_template_id)]
            keys += [
                key
                for key, entry in self._entries.items()
                if key[0] == _STAGE_TEMPLATE and entry.value.workflow_template_id == workflow_template_id
            ]
            dropped = 0
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    dropped += 1
                self._inflight.pop(key, None)
        logger.debug("Invalidated workflow template %s (%d entries)", workflow_template_id, dropped)
        return dropped

    def invalidate_all(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._inflight.clear()
        logger.info("Template cache cleared (%d entries)", count)

    def preload(self, ctx: RequestContext, workflow_template_ids: Iterable[str]) -> int:
        """
        Warm the cache with workflow templates, their stage templates and
        each stage's activity templates.

        :param ctx: The caller's request context
        :type ctx: RequestContext
        :param workflow_template_ids: The workflow templates to load
        :returns: The number of workflow templates loaded
        :rtype: int
        :raises PreloadError: If any template failed to load; the others stay cached
        """
        errors: list[Exception] = []
        loaded = 0
        for template_id in workflow_template_ids:
            try:
                self.get_workflow_template(ctx, template_id)
                for stage in self.get_stage_templates(ctx, template_id):
                    self.get_activity_templates(ctx, stage.id)
                loaded += 1
            except StageflowError as e:
                logger.warning("Failed to preload workflow template %s: %s", template_id, e)
                errors.append(e)
        if errors:
            raise PreloadError(errors)
        logger.info("Preloaded %d workflow templates", loaded)
        return loaded

    def stats(self) -> CacheStats:
        now = self._clock()
        counts = {
            _WORKFLOW_TEMPLATE: 0,
            _STAGE_TEMPLATES: 0,
            _STAGE_TEMPLATE: 0,
            _ACTIVITY_TEMPLATES: 0,
            _ACTIVITY_TEMPLATE: 0,
        }
        expired = 0
        with self._lock:
            for (kind, _), entry in self._entries.items():
                counts[kind] += 1
                if entry.expires_at <= now:
                    expired += 1
            hits, misses = self._hits, self._misses
        return CacheStats(
            workflow_templates=counts[_WORKFLOW_TEMPLATE],
            stage_template_lists=counts[_STAGE_TEMPLATES],
            stage_templates=counts[_STAGE_TEMPLATE],
            activity_template_lists=counts[_ACTIVITY_TEMPLATES],
            activity_templates=counts[_ACTIVITY_TEMPLATE],
            expired=expired,
            hits=hits,
            misses=misses,
            ttl_seconds=self.ttl_seconds,
        )

    def _get(self, key: tuple[str, str], loader: Callable[[], Any]) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > self._clock():
                self._hits += 1
                return entry.value
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future
                self._misses += 1

        if not leader:
            return future.result()

        logger.debug("Template cache miss: %s %s", *key)
        try:
            value = loader()
        except BaseException as e:
            with self._lock:
                if self._inflight.get(key) is future:
                    del self._inflight[key]
            future.set_exception(e)
            raise

        with self._lock:
            # An invalidation during the load drops the in-flight marker; the value is then stale.
            if self._inflight.get(key) is future:
                del self._inflight[key]
                self._entries[key] = _Entry(value, self._clock() + self.ttl_seconds)
        future.set_result(value)
        return value
