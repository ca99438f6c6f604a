#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""
Counter trace reduction tool.

Loads the counters dumped by an instrumented launch, uploads them to the
device and reduces them against the block cost database into the launch's
dynamic flop count.

Usage:
    python reduce_trace.py vectorAdd_1712.csv -k vectorAdd
    python reduce_trace.py vectorAdd_1712.hiptrace -k vectorAdd --blocks 64 --threads 256 --basic-blocks 5
    python reduce_trace.py vectorAdd_1712.csv -k vectorAdd --per-block
    python reduce_trace.py vectorAdd_1712.csv -k vectorAdd --emulated
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


def load_trace(args, config: dict):
    """Build an Instrumenter holding the trace counters."""
    from runtime.instrumenter import Instrumenter
    from runtime.kernel_info import KernelInfo

    if args.trace.endswith('.csv'):
        return Instrumenter.from_csv(args.trace, args.kernel, config=config)

    if None in (args.blocks, args.threads, args.basic_blocks):
        raise ValueError("Binary traces need --blocks, --threads and --basic-blocks")

    info = KernelInfo.create(args.kernel, args.basic_blocks, args.blocks, args.threads)
    instrumenter = Instrumenter(info, config=config)
    instrumenter.load_bin(args.trace)
    return instrumenter


def reduce_trace(args, config: dict) -> bool:
    instrumenter = load_trace(args, config)
    instrumenter.kernel_info.dump()

    database = instrumenter.load_database(args.database)
    print(f"  Block database: {len(database)} blocks, {database.total_flops()} static flops")

    print("\nReducing...")
    device_ptr = instrumenter.to_device()
    try:
        if args.per_block:
            usage = instrumenter.reduce_usage(device_ptr, database)
            print(f"\n  {'bb':>4} {'count':>12} {'flops':>14}")
            for bb, entry in enumerate(usage):
                print(f"  {bb:>4} {int(entry['count']):>12} {int(entry['flops']):>14}")
            total = int(usage['flops'].sum())
        else:
            total = instrumenter.reduce_flops(device_ptr, database)
    finally:
        instrumenter.free_device(device_ptr)

    print(f"\n✓ Total flops: {total}")
    return True


def main():
    parser = argparse.ArgumentParser(
        description='Reduce a basic-block counter trace to dynamic flops'
    )
    parser.add_argument('trace', help='CSV (.csv) or binary (.hiptrace) counter trace')
    parser.add_argument(
        '--kernel', '-k',
        required=True,
        help='Kernel name'
    )
    parser.add_argument(
        '--config', '-c',
        default='config.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--database', '-d',
        help='Block database path (overrides config)'
    )
    parser.add_argument('--blocks', type=int, help='Total blocks of the launch (binary traces)')
    parser.add_argument('--threads', type=int, help='Threads per block of the launch (binary traces)')
    parser.add_argument('--basic-blocks', type=int, help='Basic blocks of the kernel (binary traces)')
    parser.add_argument(
        '--per-block',
        action='store_true',
        help='Print execution count and flops per basic block'
    )
    parser.add_argument(
        '--emulated',
        action='store_true',
        help='Reduce in host memory instead of on the GPU'
    )

    args = parser.parse_args()
    config = load_config(args.config)
    if args.emulated:
        config.setdefault('hardware', {})['hardware_mode'] = 'emulated'

    print("=" * 60)
    print("COUNTER TRACE REDUCTION")
    print(f"Trace: {args.trace}")
    print("=" * 60)

    from analysis.basic_block import DatabaseNotFound, ParseFailure
    from runtime.backend import DeviceOperationFailure
    from runtime.reduction import EmptyBlockDatabase

    try:
        success = reduce_trace(args, config)
    except DatabaseNotFound as e:
        print(f"\n✗ Error: {e} (run instrument_kernel.py first)")
        success = False
    except (ParseFailure, EmptyBlockDatabase, DeviceOperationFailure, ValueError, OSError) as e:
        print(f"\n✗ Error: {e}")
        success = False

    print("\n" + "=" * 60)
    if not success:
        print("Reduction failed.")
        sys.exit(1)
    print("Reduction complete!")


if __name__ == '__main__':
    main()
