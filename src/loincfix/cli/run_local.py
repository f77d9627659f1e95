import argparse
import logging
import os
import sys
import uuid
from pathlib import Path
from typing import Any, Dict

import yaml
from dotenv import find_dotenv, load_dotenv

from loincfix.agents.graph import create_graph
from loincfix.engine.state import BatchState
from loincfix.kb.catalog_store import CatalogLoadError
from loincfix.kb.kb_api import KnowledgeBase
from loincfix.parsing.extraction import MalformedRuleError

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# env var -> (option key, type)
ENV_OVERRIDES = {
    "LOINCFIX_DATA_DIR": ("data_dir", str),
    "LOINCFIX_CATALOG_FILE": ("catalog_file", str),
    "LOINCFIX_MAX_WORKERS": ("max_workers", int),
}


def load_config(path: str) -> dict:
    """Loads YAML configuration file."""
    if not Path(path).exists():
        print(f"Error: Config file not found at {path}")
        sys.exit(1)
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def apply_env_overrides(options: Dict[str, Any]) -> Dict[str, Any]:
    """LOINCFIX_* variables (process env, then .env) take precedence over the YAML values."""
    load_dotenv(find_dotenv(usecwd=True), override=False)
    for var, (key, cast) in ENV_OVERRIDES.items():
        value = os.getenv(var)
        if value:
            options[key] = cast(value)
    level = os.getenv("LOINCFIX_LOG_LEVEL")
    if level:
        options.setdefault("logging", {})["level"] = level
    return options


def setup_logging(options: Dict[str, Any]) -> None:
    cfg = options.get("logging") or {}
    logging.basicConfig(
        level=str(cfg.get("level", "INFO")).upper(),
        format=cfg.get("format", DEFAULT_LOG_FORMAT),
    )


def main():
    parser = argparse.ArgumentParser(description="Validate LOINC mappings of lab tests and suggest corrections")
    parser.add_argument("--input", required=True, help="Batch file to check (.csv or .xlsx)")
    parser.add_argument("--output", help="Annotated output file (.csv or .xlsx); defaults to output_path in the config")
    parser.add_argument("--config", default="configs/loincfix.yaml", help="Path to configuration YAML")
    parser.add_argument("--data-dir", help="Folder holding Loinc.csv and the unit tables")
    parser.add_argument("--workers", type=int, help="Number of worker threads")
    parser.add_argument("--run-id", default=None, help="Run identifier used in the audit log")

    args = parser.parse_args()

    # 1. Load Configuration
    options = apply_env_overrides(load_config(args.config))
    if args.data_dir:
        options["data_dir"] = args.data_dir
    if args.workers:
        options["max_workers"] = args.workers
    setup_logging(options)

    # 2. Build the knowledge base
    data_dir = options.get("data_dir", "data")
    print(f"Loading knowledge base from: {data_dir}")
    try:
        kb = KnowledgeBase.from_local_data(data_dir, options)
    except (CatalogLoadError, MalformedRuleError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    # 3. Initialize State
    run_id = args.run_id or f"run_{uuid.uuid4().hex[:8]}"
    state = BatchState(
        run_id=run_id,
        input_path=args.input,
        output_path=args.output or options.get("output_path"),
        evidence_path=options.get("evidence_path"),
        options=options,
    )

    # 4. Compile and Run Graph
    app = create_graph(kb, options)
    print("Workflow started...")
    final_state = app.invoke(state)
    if isinstance(final_state, dict):
        final_state = BatchState(**final_state)

    # 5. Report Results
    print("\nWorkflow finished.")
    if final_state.errors:
        print(f"Errors encountered: {final_state.errors}")
        sys.exit(2)
    for warning in final_state.warnings:
        print(f"Warning: {warning}")
    summary = final_state.summary
    print(f"Records: {summary.get('total', 0)} (weighted {summary.get('total_weighted', 0)})")
    for judgment, count in summary.get("counts", {}).items():
        weighted = summary.get("weighted_counts", {}).get(judgment, 0)
        print(f"  {judgment:<28} {count:>6} {weighted:>8}")
    print(f"Success! Output saved to: {final_state.artifacts.get('results', 'not written (no output path)')}")
    print(f"Audit log: {final_state.artifacts.get('evidence_jsonl')}")


if __name__ == "__main__":
    main()
