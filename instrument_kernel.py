#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
Basic-block instrumentation tool.

Writes a copy of the source with per-block counters, then analyzes the
kernel's device LLVM IR and saves the block cost database keyed by the
counter slot of each CFG block.

Usage:
    python instrument_kernel.py vector_add.hip -k vectorAdd
    python instrument_kernel.py vector_add.hip -k vectorAdd -o outputs/vector_add.instr.hip
    python instrument_kernel.py vector_add.hip -k vectorAdd --ir outputs/vector_add.ll
    python instrument_kernel.py vector_add.hip -k vectorAdd --skip-analysis
"""

import argparse
import os
import sys

import yaml

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))


def load_config(config_path: str) -> dict:
    """Load configuration file, empty when it does not exist."""
    if not os.path.exists(config_path):
        return {}
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def default_output(source_path: str, output_dir: str) -> str:
    stem, ext = os.path.splitext(os.path.basename(source_path))
    return os.path.join(output_dir, f"{stem}.instr{ext or '.hip'}")


def analyze(source_path: str, kernel: str, config: dict, ir_path: str, result, verbose: bool) -> bool:
    """Static cost analysis, CFG attribution and database output."""
    from analysis.basic_block import DEFAULT_DATABASE, save_database
    from analysis.static_analyzer import StaticAnalyzer
    from instrumentation.block_map import map_block_costs

    analyzer = StaticAnalyzer(config)

    print("\nAnalyzing basic blocks...")
    if ir_path:
        with open(ir_path) as f:
            costs = analyzer.analyze_ir(f.read(), kernel)
    else:
        costs = analyzer.analyze_source(source_path, kernel)

    if costs is None:
        print(f"\n✗ Error: Kernel {kernel} not found in device IR")
        return False

    if verbose:
        print(f"\n  {'id':>4}  {'label':<16} {'flops':>6} {'loads':>6} {'stores':>6}  location")
        for c in costs:
            print(f"  {c.index:>4}  {c.label:<16} {c.flops:>6} {c.loads:>6} {c.stores:>6}  {c.begin_loc}")

    mapping = map_block_costs(costs, result.cfg, result.function)
    if mapping.unmapped:
        print(
            f"  Warning: {len(mapping.unmapped)} IR blocks outside {kernel}'s body "
            f"({mapping.unmapped_flops} flops) not attributed"
        )
    if verbose:
        for block in mapping.blocks:
            print(f"    B{block.id}: {block.flops} flops  {block.begin_loc}")

    database_path = save_database(mapping.blocks, config.get('database', DEFAULT_DATABASE))
    print(f"    Block database saved: {database_path} ({len(mapping.blocks)} blocks)")
    return True


def instrument(source_path: str, kernel: str, output_path: str, config: dict, verbose: bool):
    """Source-to-source counter instrumentation."""
    from instrumentation.cfg_instrumenter import KERNEL_NOT_FOUND, NO_EDITS, KernelCfgInstrumenter

    print("\nInstrumenting kernel...")
    result = KernelCfgInstrumenter(kernel, output_path, config).run(source_path)

    if result.status == KERNEL_NOT_FOUND:
        print(f"\n✗ Error: Kernel {kernel} not found in {source_path}")
        return None

    print(f"  {result.summary()}")
    if verbose:
        for block in result.blocks:
            detail = f"offset {block.offset}" if block.offset is not None else block.reason
            print(f"    B{block.block_id}: {block.status} ({detail})")

    if result.status == NO_EDITS:
        print(f"\n✗ Error: No block of {kernel} could be instrumented, nothing written")
        return None
    return result


def main():
    parser = argparse.ArgumentParser(
        description='Instrument a HIP/CUDA kernel with basic-block counters'
    )
    parser.add_argument('source', help='Kernel source file')
    parser.add_argument(
        '--kernel', '-k',
        required=True,
        help='Name of the kernel to instrument'
    )
    parser.add_argument(
        '--output', '-o',
        help='Instrumented source path (default: <output_dir>/<stem>.instr<ext>)'
    )
    parser.add_argument(
        '--config', '-c',
        default='config.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--ir',
        help='Analyze this device LLVM IR instead of compiling the source'
    )
    parser.add_argument(
        '--database', '-d',
        help='Block database path (overrides config)'
    )
    parser.add_argument(
        '--skip-analysis',
        action='store_true',
        help='Only instrument the source'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Print per-block details'
    )

    args = parser.parse_args()
    config = load_config(args.config)
    if args.database:
        config['database'] = args.database

    output_path = args.output or default_output(args.source, config.get('output_dir', 'outputs'))

    print("=" * 60)
    print("BASIC BLOCK INSTRUMENTATION")
    print(f"Kernel: {args.kernel}")
    print(f"Source: {args.source}")
    print("=" * 60)

    from analysis.basic_block import ParseFailure
    from analysis.static_analyzer import CompilationFailure
    from instrumentation.edits import IncompatibleEdit

    try:
        result = instrument(args.source, args.kernel, output_path, config, args.verbose)
        success = result is not None
        if success and not args.skip_analysis:
            success = analyze(args.source, args.kernel, config, args.ir, result, args.verbose)
    except (CompilationFailure, IncompatibleEdit, ParseFailure, ValueError, OSError) as e:
        print(f"\n✗ Error: {e}")
        success = False

    print("\n" + "=" * 60)
    if success:
        print(f"✓ Instrumentation complete: {output_path}")
    else:
        print("Instrumentation failed.")
        sys.exit(1)


if __name__ == '__main__':
    main()
