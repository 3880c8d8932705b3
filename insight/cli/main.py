import argparse
import asyncio
import logging
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from insight.exec.duck import DuckDBConfig, DuckDBExecutor
from insight.pipeline.orchestrator import Orchestrator
from insight.planner.llm_explain import ExplanationService
from insight.planner.openai_planner import IntentService
from insight.report.store import Post, PostStore
from insight.utils.answers import make_concise_answer
from insight.utils.deeplink import build_share_url, parse_share_url
from insight.utils.errors import ExecutionError
from insight.utils.settings import Settings

MAX_CHART_ROWS = 24


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="insight", description="Ask questions about property transactions")
    parser.add_argument("--path", dest="path", default=settings.data_path, help="Path to the transactions CSV")
    parser.add_argument("--model", dest="model", default=settings.model)
    parser.add_argument("--state-dir", dest="state_dir", default=settings.state_dir)
    sub = parser.add_subparsers(dest="command")

    ask = sub.add_parser("ask", help="Analyze a new question")
    ask.add_argument("prompt")
    reply = sub.add_parser("reply", help="Ask a follow-up on an existing post")
    reply.add_argument("post_id")
    reply.add_argument("prompt")
    deep = sub.add_parser("deep", help="Fetch or toggle the long-form analysis of a post")
    deep.add_argument("post_id")
    sub.add_parser("list", help="List saved posts")
    show = sub.add_parser("show", help="Show one post")
    show.add_argument("post_id")
    share = sub.add_parser("share", help="Print a share URL for a post")
    share.add_argument("post_id")
    open_ = sub.add_parser("open", help="Import a post from a share URL")
    open_.add_argument("url")
    remove = sub.add_parser("remove", help="Delete a post")
    remove.add_argument("post_id")
    sub.add_parser("clear", help="Delete all posts")
    return parser


def resolve_log_level(name: Optional[str]) -> int:
    level = logging.getLevelName((name or "").strip().upper())
    return level if isinstance(level, int) else logging.WARNING


def _render_chart(console: Console, post: Post) -> None:
    if not post.chart_data:
        return
    columns = ["month"] + (post.chart_keys or [k for k in post.chart_data[0] if k != "month"])
    table = Table(title=post.title or post.prompt)
    for name in columns:
        table.add_column(name)
    for row in post.chart_data[:MAX_CHART_ROWS]:
        table.add_row(*[str(row.get(c, "")) for c in columns])
    console.print(table)
    if len(post.chart_data) > MAX_CHART_ROWS:
        console.print(f"... {len(post.chart_data) - MAX_CHART_ROWS} more periods")


def render_post(console: Console, post: Post) -> None:
    console.print(Panel.fit(f"[bold]{post.title or post.prompt}[/bold]\n{post.id}  ({post.status})"))
    console.print(make_concise_answer(post))
    _render_chart(console, post)
    text = post.full_text if post.is_expanded and post.full_text else post.analysis_text
    if text:
        console.print(text)
    for reply in post.replies:
        console.print(f"\n[cyan]> {reply.prompt}[/cyan]  ({reply.status})")
        if reply.error:
            console.print(f"[red]{reply.error}[/red]")
        if reply.analysis_text:
            console.print(reply.analysis_text)


def _find(store: PostStore, console: Console, post_id: str) -> Optional[Post]:
    post = store.get(post_id)
    if post is None:
        console.print(Panel.fit(f"No post with id {post_id}"))
    return post


async def _ask(console: Console, orch: Orchestrator, prompt: str) -> int:
    with console.status("Analyzing..."):
        post_id = await orch.analyze(prompt)
    post = orch.store.get(post_id)
    render_post(console, post)
    if post.status == "error":
        hint = await orch.clarify(prompt)
        console.print(Panel.fit(hint["question"] + "\n" + "\n".join(f"- {o}" for o in hint["options"])))
        return 1
    return 0


async def _interactive(console: Console, orch: Orchestrator) -> None:
    last_post: Optional[str] = None
    while True:
        q = await asyncio.to_thread(Prompt.ask, "Ask a question (> to reply, :deep, :exit)")
        text = q.strip()
        if text.lower() in {":exit", ":quit", "exit", "quit"}:
            break
        if text == ":deep" and last_post:
            with console.status("Writing deeper analysis..."):
                await orch.analyze_deep(last_post)
            render_post(console, orch.store.get(last_post))
        elif text.startswith(">") and last_post:
            with console.status("Thinking..."):
                await orch.analyze_reply(last_post, text[1:].strip())
            render_post(console, orch.store.get(last_post))
        elif text:
            post_id = await orch.analyze(text)
            last_post = post_id
            render_post(console, orch.store.get(post_id))


def main(argv=None) -> int:
    settings = Settings.from_env()
    args = build_parser(settings).parse_args(argv if argv is not None else sys.argv[1:])
    logging.basicConfig(level=resolve_log_level(settings.log_level), format="%(message)s", handlers=[RichHandler(show_path=False)])
    console = Console()
    store = PostStore(args.state_dir)

    if args.command == "list":
        table = Table(title="Posts")
        for name in ("id", "status", "title", "replies"):
            table.add_column(name)
        for post in store.all():
            table.add_row(post.id, post.status, post.title or post.prompt, str(len(post.replies)))
        console.print(table)
        return 0
    if args.command == "show":
        post = _find(store, console, args.post_id)
        if post:
            render_post(console, post)
        return 0 if post else 1
    if args.command == "share":
        post = _find(store, console, args.post_id)
        if post:
            console.print(build_share_url(post, settings.share_base_url), soft_wrap=True)
        return 0 if post else 1
    if args.command == "open":
        _, post = parse_share_url(args.url)
        if post is None:
            console.print(Panel.fit("Could not decode the shared post"))
            return 1
        store.add(post)
        render_post(console, post)
        return 0
    if args.command == "remove":
        return 0 if store.remove(args.post_id) else 1
    if args.command == "clear":
        store.clear()
        return 0

    try:
        executor = DuckDBExecutor(DuckDBConfig(csv_path=args.path))
    except ExecutionError as e:
        console.print(Panel.fit(e.message))
        return 2

    with executor:
        orch = Orchestrator(
            store,
            executor,
            IntentService(api_key=settings.openai_api_key, model=args.model),
            ExplanationService(api_key=settings.openai_api_key, model=settings.explain_model or args.model),
            prompt_hint=settings.date_range_hint(),
            reply_context_chars=settings.reply_context_chars,
        )
        if args.command == "ask":
            return asyncio.run(_ask(console, orch, args.prompt))
        if args.command == "reply":
            if not _find(store, console, args.post_id):
                return 1
            asyncio.run(orch.analyze_reply(args.post_id, args.prompt))
            render_post(console, store.get(args.post_id))
            return 0
        if args.command == "deep":
            if not _find(store, console, args.post_id):
                return 1
            asyncio.run(orch.analyze_deep(args.post_id))
            render_post(console, store.get(args.post_id))
            return 0
        asyncio.run(_interactive(console, orch))
    return 0


if __name__ == "__main__":
    sys.exit(main())
