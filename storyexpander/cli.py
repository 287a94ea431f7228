"""Story Expander CLI entrypoint.

Usage:
  storyexpander start <draft.txt> [--config run.yaml]
  storyexpander advance [--all] [--draft draft.txt]
  storyexpander status
  storyexpander edit-instruction <chapter> <text> [--no-propagate]
  storyexpander outline-instruction <text> [--no-propagate]
  storyexpander propagate [chapter]
  storyexpander expand-more <chapter>
  storyexpander regenerate <chapter>
  storyexpander illustrate <chapter|cover|all> [--style STYLE]
  storyexpander export <out.md> [--title TITLE]
  storyexpander reset
  storyexpander env

Chapters are numbered from 1 on the command line. Progress is saved under
SE_STATE_DIR after every step, so each command resumes where the last stopped.

Exit codes: 0 success, 1 a stage failed (see `status`), 2 usage or
precondition error.
"""
from __future__ import annotations

import argparse
import os
import sys

from .context import RunContext, SEError
from .env import collect_program_env_snapshot, load_env
from .export import write_markdown
from .logging import init_run_logs as _init_run_logs, log_error_base as _log_error_base, log_run as _log_run
from .models import StageOutcome
from .pipeline import Pipeline
from .templates import missing_prompts
from .utils import preview, to_text


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="storyexpander", description="Turn a long draft into an outlined, expanded novel")
    parser.add_argument("--base", dest="base", help="Override SE_BASE_DIR for this run")
    sub = parser.add_subparsers(dest="cmd")

    p_start = sub.add_parser("start", help="Start a new run for a draft (discards saved progress)")
    p_start.add_argument("draft_path", help="Path to the draft text file")
    p_start.add_argument("--config", dest="config_path", help="YAML run file with instructions/style")

    p_adv = sub.add_parser("advance", help="Run the next pending stage (or retry the failed one)")
    p_adv.add_argument("--all", action="store_true", dest="all", help="Keep advancing until complete or a stage fails")
    p_adv.add_argument("--draft", dest="draft_path", help="Refuse to resume if progress belongs to another draft")

    sub.add_parser("status", help="Show the current stage, chapters and last error")

    p_edit = sub.add_parser("edit-instruction", help="Set a chapter's instruction and propagate it")
    p_edit.add_argument("chapter", type=int)
    p_edit.add_argument("text")
    p_edit.add_argument("--no-propagate", action="store_true", dest="no_propagate")

    p_prop = sub.add_parser("propagate", help="Regenerate the outline after an instruction edit saved with --no-propagate")
    p_prop.add_argument("chapter", type=int, nargs="?", help="First chapter to regenerate (default: earliest pending edit)")

    p_outline = sub.add_parser("outline-instruction", help="Set the global outline instruction and propagate it")
    p_outline.add_argument("text")
    p_outline.add_argument("--no-propagate", action="store_true", dest="no_propagate")

    p_more = sub.add_parser("expand-more", help="Append more prose to an expanded chapter")
    p_more.add_argument("chapter", type=int)

    p_regen = sub.add_parser("regenerate", help="Re-expand a chapter from its outline entry")
    p_regen.add_argument("chapter", type=int)

    p_ill = sub.add_parser("illustrate", help="Generate illustrations (best effort)")
    p_ill.add_argument("target", help="Chapter number, 'cover' or 'all'")
    p_ill.add_argument("--style", dest="style")

    p_exp = sub.add_parser("export", help="Write the story as Markdown")
    p_exp.add_argument("out_path")
    p_exp.add_argument("--title", dest="title", default="")

    sub.add_parser("reset", help="Clear all progress")
    sub.add_parser("env", help="Print the effective configuration (secrets masked)")

    return parser.parse_args(argv)


def _print_outcome(outcome: StageOutcome) -> int:
    if outcome.ok:
        note = " (fallback model used)" if outcome.fallback_used else ""
        print(f"[{outcome.operation}] {outcome.message}{note} -> stage={outcome.stage.value}")
        return 0
    print(f"[{outcome.operation}] FAILED ({outcome.error_kind}): {outcome.message}")
    raw = getattr(outcome.error, "raw", "")
    if raw:
        print(f"Raw model output: {preview(raw, 500)}")
    print("Run `storyexpander advance` to retry.")
    return 1


def _print_status(p: Pipeline) -> None:
    st = p.get_state()
    print(f"stage: {st.stage.value}")
    if st.chapters:
        print(f"next chapter: {st.chapter_index + 1}/{len(st.chapters)}")
        for i, ch in enumerate(st.chapters, start=1):
            words = len(ch.expanded_text.split())
            flags = []
            if ch.instruction:
                flags.append("instruction")
            if ch.expansion_count:
                flags.append(f"+{ch.expansion_count}")
            if ch.illustration is not None:
                flags.append("image" if ch.illustration.available else "no-image")
            extra = f" [{', '.join(flags)}]" if flags else ""
            print(f"  {i:2d}. {ch.title} ({words} words){extra}")
    if st.elements is not None:
        print(f"characters: {', '.join(st.elements.character_names()) or '(none)'}")
    if st.pending_propagation is not None:
        print(f"pending edit: chapters {st.pending_propagation + 1}+ must be propagated before expansion")
    if st.fallback_events:
        print(f"fallback used: {len(st.fallback_events)} time(s)")
    if st.last_error:
        print(f"last error: {st.last_error.get('kind')} in {st.last_error.get('operation')}: {st.last_error.get('message')}")
    if p.last_persistence_error:
        print(f"WARNING: state not saved: {p.last_persistence_error}")


def _dispatch(ns: argparse.Namespace, p: Pipeline) -> int:
    if ns.cmd == "start":
        ctx = RunContext.from_paths(draft_path=ns.draft_path, config_path=ns.config_path)
        p.start(ctx.draft, ctx.instructions, style=ctx.style, chunk_max_bytes=ctx.chunk_max_bytes)
        print(f"Started run for {ctx.draft_path} ({len(ctx.draft)} chars). Run `storyexpander advance --all` next.")
        return 0

    draft = None
    if ns.cmd == "advance" and ns.draft_path:
        draft = RunContext.from_paths(draft_path=ns.draft_path).draft
    p.load(draft)

    if ns.cmd == "status":
        _print_status(p)
        return 0
    if ns.cmd == "advance":
        return _print_outcome(p.run_to_completion() if ns.all else p.advance())
    if ns.cmd == "edit-instruction":
        decision = p.edit_chapter_instruction(ns.chapter - 1, ns.text)
        if not decision.needs_propagation:
            print("Instruction unchanged.")
            return 0
        if ns.no_propagate:
            print(f"Instruction saved; chapters {decision.affected[0] + 1}-{decision.affected[-1] + 1} are now out of date. "
                  f"Run `storyexpander propagate` before expanding them.")
            return 0
        return _print_outcome(p.propagate_continuity(ns.chapter - 1))
    if ns.cmd == "propagate":
        pending = p.get_state().pending_propagation
        if ns.chapter is not None:
            return _print_outcome(p.propagate_continuity(ns.chapter - 1))
        if pending is None:
            print("Nothing to propagate.")
            return 0
        if pending == 0 and p.get_state().outline_instruction:
            return _print_outcome(p.propagate_outline_instruction())
        return _print_outcome(p.propagate_continuity(pending))
    if ns.cmd == "outline-instruction":
        decision = p.edit_outline_instruction(ns.text)
        if not decision.needs_propagation or ns.no_propagate:
            print("Outline instruction saved.")
            return 0
        return _print_outcome(p.propagate_outline_instruction())
    if ns.cmd == "expand-more":
        return _print_outcome(p.expand_more(ns.chapter - 1))
    if ns.cmd == "regenerate":
        return _print_outcome(p.regenerate_chapter(ns.chapter - 1))
    if ns.cmd == "illustrate":
        target = str(ns.target).strip().lower()
        if target == "all":
            return _print_outcome(p.regenerate_images(style=ns.style))
        if target == "cover":
            return _print_outcome(p.illustrate_cover(style=ns.style))
        try:
            number = int(target)
        except ValueError:
            print("illustrate expects a chapter number, 'cover' or 'all'")
            return 2
        return _print_outcome(p.illustrate_chapter(number - 1, style=ns.style))
    if ns.cmd == "export":
        path = write_markdown(p.get_state(), ns.out_path, ns.title)
        print(f"Wrote {path}")
        return 0
    if ns.cmd == "reset":
        p.reset()
        print("Progress cleared.")
        return 0
    print("No command executed.")
    return 1


def main(argv: list[str] | None = None, pipeline: Pipeline | None = None) -> int:
    load_env()
    ns = _parse_args(list(sys.argv[1:] if argv is None else argv))
    if ns.base:
        os.environ["SE_BASE_DIR"] = str(ns.base)
    if ns.cmd is None:
        print("Usage: storyexpander <start|advance|status|edit-instruction|outline-instruction|propagate|"
              "expand-more|regenerate|illustrate|export|reset|env> ...")
        return 1
    if ns.cmd == "env":
        print(to_text(collect_program_env_snapshot()))
        return 0

    _init_run_logs()
    missing = missing_prompts()
    if missing:
        print(f"Error: missing prompt templates: {', '.join(missing)}")
        return 2
    _log_run(f"=== CLI === cmd={ns.cmd}")

    p = pipeline or Pipeline()
    try:
        return _dispatch(ns, p)
    except SEError as e:
        _log_error_base(f"{ns.cmd}: {type(e).__name__}: {e}")
        return 2


if __name__ == "__main__":
    code = main()
    raise SystemExit(code)
