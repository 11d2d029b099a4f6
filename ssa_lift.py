#!/usr/bin/env python3
"""Development driver: lift a JSON semantics stream into optimised SSA IR."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path

from ssalift import (
    IRTextRenderer,
    KnowledgeBase,
    SSALiftError,
    decompile,
    load_stream,
    serialize_graph,
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("input", type=Path, help="Ingest document (JSON)")
    parser.add_argument(
        "--knowledge-base",
        type=Path,
        default=Path("knowledge/ssalift.json"),
        help="Opcode table, calling convention and pipeline settings overrides",
    )
    parser.add_argument(
        "--ir-out",
        type=Path,
        default=None,
        help="Override the default <input>.ir.txt output path",
    )
    parser.add_argument(
        "--json-out",
        type=Path,
        default=None,
        help="Also write the serialised graph to this path",
    )
    parser.add_argument(
        "--keep-ssa",
        action="store_true",
        help="Skip De-SSA and dump the graph with its phi nodes",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Run the IR verifier after every mutating pass",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args()


def main() -> int:
    start_time = time.perf_counter()
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    knowledge = KnowledgeBase.load(args.knowledge_base)
    if args.validate:
        knowledge = knowledge.with_settings(replace(knowledge.settings, validate=True))

    try:
        stream = load_stream(args.input)
        result = decompile(stream, knowledge, finalize=not args.keep_ssa)
    except SSALiftError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    ir_output_path = args.ir_out or args.input.with_suffix(".ir.txt")
    IRTextRenderer().write(result.graph, ir_output_path, result.diagnostics)
    print(f"ir written to {ir_output_path}")

    if args.json_out is not None:
        payload = serialize_graph(result.graph, result.diagnostics)
        args.json_out.write_text(json.dumps(payload, indent=2), "utf-8")
        print(f"graph written to {args.json_out}")

    for line, count in sorted(result.diagnostics.summary().items()):
        print(f"{line}: {count}")
    total_time = time.perf_counter() - start_time
    print(f"total execution time: {total_time:.2f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
