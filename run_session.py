"""CLI entrypoint for running bounded code-improvement sessions."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import yaml
from openai import OpenAI

from core.attempt_store import JsonAttemptStore
from core.env_utils import env_float, first_env, load_env_file
from core.evaluator_client import EvaluatorClient, EvaluatorConfig, Judge0Backend, LocalSandboxBackend
from core.orchestrator import OrchestratorConfig, SessionOrchestrator, SessionRequest
from core.streaming import CHUNK_CODE, CHUNK_ERROR, CHUNK_REASONING, TaggedChunk
from core.token_tracker import TRACKER
from generators import GENERATOR_REGISTRY, get_generator
from problems import get_problem_source


def load_session_config(path: str | None, allow_missing: bool = False) -> dict[str, Any]:
    """Load JSON/YAML session config file."""

    if not path:
        return {}

    config_path = Path(path)
    if not config_path.exists():
        if allow_missing:
            return {}
        raise FileNotFoundError(f"Config file not found: {path}")

    if config_path.suffix.lower() == ".json":
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    else:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    return payload if isinstance(payload, dict) else {}


def print_chunk(chunk: TaggedChunk) -> None:
    if chunk.kind in (CHUNK_REASONING, CHUNK_CODE):
        sys.stdout.write(chunk.content)
        sys.stdout.flush()
    elif chunk.kind == CHUNK_ERROR:
        print(f"\n[Stream] error: {chunk.content}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run bounded generate -> evaluate -> improve sessions")
    default_config_path = "configs/session.yaml"
    parser.add_argument(
        "--config",
        default=default_config_path,
        help=f"Path to YAML/JSON session config (default: {default_config_path})",
    )
    parser.add_argument("--no-config", action="store_true", help="Ignore config file and use only CLI args + env vars")
    parser.add_argument("--problems", default="data/problems.jsonl", help="Problem catalog (JSONL or JSON list)")
    parser.add_argument("--problem-id", action="append", default=None, help="Problem to solve (repeatable)")
    parser.add_argument("--all-problems", action="store_true", help="Run one session per catalog problem")
    parser.add_argument("--session-id", default=None, help="Resume (or create) this session id")
    parser.add_argument("--language", default="python")
    parser.add_argument("--attempt-budget", type=int, default=5)
    parser.add_argument("--generator", default="direct", choices=sorted(GENERATOR_REGISTRY))
    parser.add_argument("--model", default=None, help="Model used for generation")
    parser.add_argument("--stream", action="store_true", help="Consume generation as a tagged chunk stream")
    parser.add_argument("--store-dir", default="sessions")
    parser.add_argument("--backend", default="local", choices=["local", "judge0"], help="Execution backend")
    parser.add_argument("--judge0-url", default=None, help="Judge0-compatible base URL")
    parser.add_argument("--judge0-key", default=None, help="Judge0 API key")
    parser.add_argument("--judge0-host", default=None, help="Judge0 RapidAPI host header")
    parser.add_argument("--sandbox-timeout", type=float, default=10.0, help="Per-test timeout for local execution")
    parser.add_argument("--eval-max-wait", type=float, default=120.0, help="Total evaluation wall time per attempt")
    parser.add_argument("--show-progress", action="store_true", help="Show per-test progress bars")
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--output", default="outputs/session_reports.jsonl", help="Where to save reports")
    parser.add_argument("--env-file", default=".env", help="Path to env file (default: .env)")
    parser.add_argument("--base-url", default=None, help="Optional OpenAI-compatible base URL")
    parser.add_argument("--api-key", default=None, help="API key (fallback to OPENAI_API_KEY)")
    parser.add_argument("--api-timeout", type=float, default=None, help="Per-request API timeout in seconds")
    args = parser.parse_args()

    config_doc = (
        {}
        if args.no_config
        else load_session_config(args.config, allow_missing=(args.config == default_config_path))
    )
    problems_cfg = config_doc.get("problems", {}) if isinstance(config_doc.get("problems", {}), dict) else {}
    session_cfg = config_doc.get("session", {}) if isinstance(config_doc.get("session", {}), dict) else {}
    generator_cfg = config_doc.get("generator", {}) if isinstance(config_doc.get("generator", {}), dict) else {}
    evaluator_cfg = config_doc.get("evaluator", {}) if isinstance(config_doc.get("evaluator", {}), dict) else {}

    def resolve_cli_or_config(arg_name: str, config_value: Any) -> Any:
        cli_value = getattr(args, arg_name)
        flag = f"--{arg_name.replace('_', '-')}"
        provided = any(token == flag or token.startswith(f"{flag}=") for token in sys.argv[1:])
        if provided:
            return cli_value
        return cli_value if config_value is None else config_value

    load_env_file(args.env_file)

    problems_path = str(resolve_cli_or_config("problems", problems_cfg.get("data_path")))
    language = str(resolve_cli_or_config("language", session_cfg.get("language")))
    attempt_budget = int(resolve_cli_or_config("attempt_budget", session_cfg.get("attempt_budget")))
    store_dir = str(resolve_cli_or_config("store_dir", session_cfg.get("store_dir")))
    workers = max(1, int(resolve_cli_or_config("workers", session_cfg.get("workers"))))
    stream = bool(args.stream or session_cfg.get("stream_generation", False))
    generator_name = str(resolve_cli_or_config("generator", generator_cfg.get("name")))
    backend_name = str(resolve_cli_or_config("backend", evaluator_cfg.get("backend")))
    sandbox_timeout = float(resolve_cli_or_config("sandbox_timeout", evaluator_cfg.get("sandbox_timeout_seconds")))
    eval_max_wait = float(resolve_cli_or_config("eval_max_wait", evaluator_cfg.get("max_total_wait_seconds")))
    show_progress = bool(args.show_progress or evaluator_cfg.get("show_progress", False))

    if generator_name not in GENERATOR_REGISTRY:
        raise ValueError(f"Unknown generator {generator_name}. Available: {', '.join(sorted(GENERATOR_REGISTRY))}")
    if attempt_budget < 1:
        raise ValueError("--attempt-budget must be >= 1")

    model = (
        resolve_cli_or_config("model", generator_cfg.get("model"))
        or first_env(["GENERATOR_MODEL", "OPENAI_MODEL", "MODEL"])
        or "gpt-4o-mini"
    )
    base_url = args.base_url or first_env(["OPENAI_BASE_URL", "BASE_URL", "OPENAI_API_BASE"])
    api_key = args.api_key or first_env(["OPENAI_API_KEY", "API_KEY"])
    api_timeout = (
        float(args.api_timeout)
        if args.api_timeout and args.api_timeout > 0
        else env_float(
            ["OPENAI_API_TIMEOUT_SECONDS", "OPENAI_API_TIMEOUT", "API_TIMEOUT_SECONDS"],
            default=90.0,
        )
    )
    if not api_key:
        raise ValueError("Please provide --api-key or set OPENAI_API_KEY/API_KEY")

    client_kwargs = {"api_key": api_key, "timeout": api_timeout}
    if base_url:
        client_kwargs["base_url"] = base_url
    llm_client = OpenAI(**client_kwargs)

    if backend_name == "judge0":
        judge0_url = resolve_cli_or_config("judge0_url", evaluator_cfg.get("judge0_url")) or first_env(
            ["JUDGE0_URL", "JUDGE0_BASE_URL"]
        )
        if not judge0_url:
            raise ValueError("Please provide --judge0-url or set JUDGE0_URL for the judge0 backend")
        backend = Judge0Backend(
            judge0_url,
            api_key=args.judge0_key or first_env(["JUDGE0_API_KEY", "RAPIDAPI_KEY"]),
            api_host=args.judge0_host or first_env(["JUDGE0_API_HOST", "RAPIDAPI_HOST"]),
        )
    else:
        backend = LocalSandboxBackend(timeout_seconds=sandbox_timeout)

    problem_source = get_problem_source("jsonl", data_path=problems_path)
    evaluator = EvaluatorClient(
        backend,
        EvaluatorConfig(max_total_wait_seconds=eval_max_wait, show_progress=show_progress),
        problem_source=problem_source,
    )
    generator = get_generator(generator_name, llm_client, model_name=model)
    store = JsonAttemptStore(store_dir)
    orchestrator = SessionOrchestrator(
        problem_source,
        generator,
        evaluator,
        store,
        OrchestratorConfig(
            default_attempt_budget=attempt_budget,
            stream_generation=stream,
        ),
    )

    problem_ids = list(args.problem_id or session_cfg.get("problem_ids") or [])
    if args.all_problems:
        problem_ids = problem_source.list_ids()
    if not problem_ids:
        raise ValueError("Provide --problem-id (repeatable) or --all-problems")

    if config_doc:
        print(f"Loaded config: {args.config}")
    print(f"Generator: {generator_name} model={model} stream={stream}")
    print(f"Backend: {backend_name} | store={store_dir} | budget={attempt_budget} | problems={len(problem_ids)}")

    if len(problem_ids) == 1:
        report = orchestrator.run(
            problem_ids[0],
            language=language,
            attempt_budget=attempt_budget,
            session_id=args.session_id,
            listener=print_chunk if stream else None,
        )
        results = [{"problem_id": problem_ids[0], "report": report.to_dict(), "error": None}]
    else:
        if args.session_id:
            print("[Warn] --session-id is ignored when running more than one problem")
        requests = [
            SessionRequest(problem_id=problem_id, language=language, attempt_budget=attempt_budget)
            for problem_id in problem_ids
        ]
        results = orchestrator.run_batch(requests, workers=workers)

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as file_obj:
        for item in results:
            file_obj.write(json.dumps(item, ensure_ascii=False) + "\n")

    for item in results:
        report = item["report"]
        if report is None:
            print(f"{item['problem_id']}: error={item['error']}")
            continue
        print(
            f"{item['problem_id']}: status={report['status']} best={report['best_score']:.1f}% "
            f"attempts={report['attempts_consumed']}/{report['attempt_budget']} session={report['session_id']}"
        )
    print(f"Token usage: {json.dumps(TRACKER.summary(), ensure_ascii=False)}")
    print(f"Saved reports: {output_path}")


if __name__ == "__main__":
    main()
