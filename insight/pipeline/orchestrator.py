from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from insight.exec.sql_builder import compile_intent
from insight.planner.intent import Intent
from insight.planner.llm_explain import FULL, SHORT
from insight.report.store import Post, PostStore, Reply, new_id
from insight.tools.pivot import pivot_chart_data
from insight.tools.stats import compute_summary_stats
from insight.utils.errors import CancellationError, ExecutionError, InsightError, ParseError
from insight.utils.schema_cache import DatasetMeta, SchemaCache

logger = logging.getLogger(__name__)

TokenKey = Tuple[str, Optional[str]]

ANALYZE = "analyze"
DEEP = "deep"
REPLY = "reply"

NO_QUERY_MESSAGE = "No query could be generated for this intent"
INTERRUPTED_MESSAGE = "Interrupted"
EMPTY_STATS = {"series": [], "date_range": {"from": None, "to": None}}


class CancelToken:
    """Cooperative cancellation handle for one operation.

    ``check`` is called before every state mutation; ``cancel`` also cancels
    the bound task so pending network awaits are abandoned.
    """

    def __init__(self, key: TokenKey):
        self.key = key
        self.cancelled = False
        self.superseded = False
        self._task: Optional[asyncio.Future] = None

    def bind(self, task: asyncio.Future) -> None:
        self._task = task
        if self.cancelled:
            task.cancel()

    def cancel(self, superseded: bool = False) -> None:
        self.cancelled = True
        self.superseded = self.superseded or superseded
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def check(self) -> None:
        if self.cancelled:
            raise CancellationError()


class Orchestrator:
    """Drives interpret -> query -> explain for posts, replies and deep analysis.

    Cancellation tokens are keyed per operation kind and entity: one slot for
    top-level analysis, one per post for deep analysis and one per post thread
    for replies. Starting an operation only supersedes the previous holder of
    the same slot.
    """

    def __init__(
        self,
        store: PostStore,
        executor: Any,
        intents: Any,
        explainer: Any,
        meta: Optional[DatasetMeta | Mapping[str, Any]] = None,
        prompt_hint: str = "",
        reply_context_chars: int = 600,
    ):
        self.store = store
        self.executor = executor
        self.intents = intents
        self.explainer = explainer
        self.prompt_hint = prompt_hint
        self.reply_context_chars = reply_context_chars
        self._meta = meta
        self._schema_cache = SchemaCache()
        self._tokens: Dict[TokenKey, CancelToken] = {}

    # -- cancellation -----------------------------------------------------

    def _acquire(self, key: TokenKey) -> CancelToken:
        previous = self._tokens.get(key)
        if previous is not None:
            logger.info("superseding in-flight %s operation %s", key[0], key[1] or "")
            previous.cancel(superseded=True)
        token = CancelToken(key)
        self._tokens[key] = token
        return token

    def _release(self, token: CancelToken) -> None:
        if self._tokens.get(token.key) is token:
            del self._tokens[token.key]

    def in_flight(self) -> List[TokenKey]:
        return list(self._tokens)

    def cancel(self, kind: Optional[str] = None) -> None:
        """Cancel in-flight operations, optionally only those of one kind."""
        for key, token in list(self._tokens.items()):
            if kind is None or key[0] == kind:
                token.cancel()

    async def _run(
        self,
        token: CancelToken,
        pipeline: Awaitable[None],
        on_cancel: Optional[Callable[[CancelToken], None]] = None,
    ) -> None:
        task = asyncio.ensure_future(pipeline)
        token.bind(task)
        try:
            await task
        except (asyncio.CancelledError, CancellationError):
            if not token.cancelled:
                raise
            logger.info("%s operation %s cancelled", token.key[0], token.key[1] or "")
            if on_cancel is not None:
                on_cancel(token)
        finally:
            self._release(token)

    # -- shared stages ----------------------------------------------------

    def _patch_post(self, token: CancelToken, post_id: str, **changes: Any) -> None:
        token.check()
        if "status" in changes:
            logger.debug("post %s -> %s", post_id, changes["status"])
        self.store.patch(post_id, **changes)

    def _patch_reply(self, token: CancelToken, post_id: str, reply_id: str, **changes: Any) -> None:
        token.check()
        if "status" in changes:
            logger.debug("reply %s/%s -> %s", post_id, reply_id, changes["status"])
        self.store.patch_reply(post_id, reply_id, **changes)

    async def _get_meta(self) -> DatasetMeta | Mapping[str, Any]:
        if self._meta is None:
            self._meta = await asyncio.to_thread(self._schema_cache.get_meta, self.executor)
        return self._meta

    async def _query_rows(self, intent: Intent) -> List[Dict[str, Any]]:
        schema = await asyncio.to_thread(self._schema_cache.get_or_load, self.executor)
        try:
            compiled = compile_intent(intent, schema)
        except ValueError as e:
            # The registered view no longer carries a column the plan needs
            raise ExecutionError(str(e)) from e
        if compiled.is_empty:
            raise ParseError(NO_QUERY_MESSAGE)
        return await asyncio.to_thread(self.executor.query, compiled.query_text, compiled.params)

    def _with_hint(self, prompt: str) -> str:
        return prompt + self.prompt_hint if self.prompt_hint else prompt

    # -- top-level analysis -----------------------------------------------

    async def analyze(self, prompt: str) -> str:
        """Create a post for ``prompt`` and run it to completion; returns the post id.

        Any earlier top-level analysis still in flight is abandoned.
        """
        token = self._acquire((ANALYZE, None))
        post = self.store.add(Post(id=new_id(), prompt=prompt, title=prompt[:60]))
        await self._run(token, self._analyze_pipeline(token, post.id, prompt))
        return post.id

    async def _analyze_pipeline(self, token: CancelToken, post_id: str, prompt: str) -> None:
        try:
            meta = await self._get_meta()
            intent = await self.intents.fetch_intent(self._with_hint(prompt), meta)
            self._patch_post(token, post_id, status="querying", intent=intent, title=intent.title or prompt[:60])

            rows = await self._query_rows(intent)
            chart = pivot_chart_data(rows, intent)
            stats = compute_summary_stats(rows, intent)
            self._patch_post(
                token, post_id,
                status="explaining", chart_data=chart.chart_data, chart_keys=chart.chart_keys,
            )

            text = ""
            async for chunk in self.explainer.stream(prompt, intent, stats, SHORT):
                text += chunk
                self._patch_post(token, post_id, analysis_text=text, short_text=text)

            self._patch_post(
                token, post_id,
                status="done", analysis_text=text, short_text=text,
                full_text=None, is_expanded=False, summary_stats=stats,
            )
        except CancellationError:
            raise
        except InsightError as e:
            self._fail_post(token, post_id, e.message)
        except Exception as e:
            logger.exception("analysis of post %s failed", post_id)
            self._fail_post(token, post_id, str(e) or "Something went wrong")

    def _fail_post(self, token: CancelToken, post_id: str, message: str) -> None:
        if token.cancelled:
            return
        # Errored posts stay inert: no partial chart or analysis
        self._patch_post(
            token, post_id,
            status="error", error=message, chart_data=[], chart_keys=[],
            analysis_text="", short_text="",
        )

    # -- deep analysis ----------------------------------------------------

    async def analyze_deep(self, post_id: str) -> Optional[Post]:
        """Fetch (once) and expand the long-form analysis of a finished post.

        With the full text already cached this only toggles ``is_expanded``.
        """
        post = self.store.get(post_id)
        if post is None:
            return None
        if post.full_text is not None:
            return self.store.patch(post_id, is_expanded=not post.is_expanded)
        if post.intent is None or post.summary_stats is None:
            logger.info("post %s has no finished analysis to deepen", post_id)
            return post

        token = self._acquire((DEEP, post_id))
        self._patch_post(token, post_id, status="deepening")
        await self._run(token, self._deep_pipeline(token, post_id), on_cancel=self._revert_deep)
        return self.store.get(post_id)

    async def _deep_pipeline(self, token: CancelToken, post_id: str) -> None:
        post = self.store.get(post_id)
        text = ""
        try:
            async for chunk in self.explainer.stream(post.prompt, post.intent, post.summary_stats, FULL):
                token.check()
                text += chunk
            self._patch_post(token, post_id, status="done", full_text=text, is_expanded=True)
        except CancellationError:
            raise
        except Exception as e:
            # The short analysis stays visible; the failure is not surfaced
            logger.warning("deep analysis of post %s failed: %s", post_id, e)
            if not token.cancelled:
                self.store.patch(post_id, status="done")

    def _revert_deep(self, token: CancelToken) -> None:
        if token.superseded:
            return
        post = self.store.get(token.key[1])
        if post is not None and post.status == "deepening":
            self.store.patch(post.id, status="done")

    # -- threaded replies -------------------------------------------------

    def _current_parent(self, post_id: str) -> Post:
        parent = self.store.get(post_id)
        if parent is None:
            raise InsightError(f"Post {post_id} no longer exists", status=404)
        return parent

    def _reply_context(self, parent: Post) -> Dict[str, str]:
        n = self.reply_context_chars
        return {
            "parentPrompt": (parent.prompt or "")[:n],
            "parentTitle": (parent.title or "")[:n],
            "parentAnalysis": (parent.full_text or parent.short_text or parent.analysis_text or "")[:n],
        }

    async def analyze_reply(self, post_id: str, prompt: str) -> Optional[str]:
        """Append a follow-up reply to a post and run it; returns the reply id."""
        if self.store.get(post_id) is None:
            return None
        token = self._acquire((REPLY, post_id))
        reply = Reply(id=new_id(), prompt=prompt)
        self.store.add_reply(post_id, reply)

        def interrupted(_token: CancelToken) -> None:
            current = self.store.get(post_id)
            current_reply = current.get_reply(reply.id) if current else None
            if current_reply is not None and current_reply.status not in ("done", "error"):
                self.store.patch_reply(post_id, reply.id, status="error", error=INTERRUPTED_MESSAGE)

        await self._run(token, self._reply_pipeline(token, post_id, reply.id, prompt), on_cancel=interrupted)
        return reply.id

    async def _reply_pipeline(self, token: CancelToken, post_id: str, reply_id: str, prompt: str) -> None:
        try:
            meta = await self._get_meta()
            parent = self._current_parent(post_id)
            intent = await self.intents.fetch_intent(self._with_hint(prompt), meta, context=self._reply_context(parent))

            # Conversational replies reuse the parent's numbers
            parent = self._current_parent(post_id)
            stats = parent.summary_stats or EMPTY_STATS
            explain_intent = parent.intent or intent
            if intent.needs_chart:
                self._patch_reply(token, post_id, reply_id, status="querying", intent=intent)
                rows = await self._query_rows(intent)
                chart = pivot_chart_data(rows, intent)
                if rows:
                    stats = compute_summary_stats(rows, intent)
                    explain_intent = intent
                self._patch_reply(
                    token, post_id, reply_id,
                    status="explaining", chart_data=chart.chart_data, chart_keys=chart.chart_keys,
                )
            else:
                self._patch_reply(token, post_id, reply_id, status="explaining", intent=intent)

            text = ""
            async for chunk in self.explainer.stream(prompt, explain_intent, stats, SHORT):
                text += chunk
                self._patch_reply(token, post_id, reply_id, analysis_text=text)
            self._patch_reply(token, post_id, reply_id, status="done", analysis_text=text)
        except CancellationError:
            raise
        except InsightError as e:
            self._fail_reply(token, post_id, reply_id, e.message)
        except Exception as e:
            logger.exception("reply %s/%s failed", post_id, reply_id)
            self._fail_reply(token, post_id, reply_id, str(e) or "Something went wrong")

    def _fail_reply(self, token: CancelToken, post_id: str, reply_id: str, message: str) -> None:
        if token.cancelled:
            return
        self._patch_reply(token, post_id, reply_id, status="error", error=message)

    # -- clarification ----------------------------------------------------

    async def clarify(self, prompt: str) -> Dict[str, Any]:
        return await self.explainer.clarify(prompt)
