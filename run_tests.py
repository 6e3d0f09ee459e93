#!/usr/bin/env python
"""
Quick reference: Running the alert engine test suites.

Execute this file or use the commands below directly.
"""

import subprocess
import sys


def run_tests(include_slow: bool = False):
    """Run every test group, skipping slow statistical checks unless asked."""

    print("=" * 70)
    print("RUNNING ALERT ENGINE TEST SUITE")
    print("=" * 70)
    print()

    marker = "" if include_slow else ' -m "not slow"'
    commands = [
        ("Unit Tests - Statistics", "pytest tests/unit/test_statistics.py tests/unit/test_tuning.py -v"),
        ("Unit Tests - Series", "pytest tests/unit/test_series.py -v"),
        ("Unit Tests - Detectors", f"pytest tests/unit/test_detectors.py -v{marker}"),
        ("Unit Tests - Baselines", "pytest tests/unit/test_baselines.py -v"),
        ("Unit Tests - Engine", "pytest tests/unit/test_engine.py tests/unit/test_scoring.py -v"),
        ("Unit Tests - Governance", "pytest tests/unit/test_policies.py tests/unit/test_settings.py tests/unit/test_storage.py -v"),
        ("Integration Tests - Pipeline", "pytest tests/integration/ -v"),
        ("All Tests with Coverage", f"pytest tests/ -v{marker} --cov=src --cov-report=html"),
    ]

    failed = 0
    for name, cmd in commands:
        print(f"\n{'='*70}")
        print(f"{name}")
        print(f"{'='*70}")
        print(f"Command: {cmd}\n")
        result = subprocess.run(cmd, shell=True)
        if result.returncode != 0:
            failed += 1
            print(f"❌ {name} failed")
        else:
            print(f"✓ {name} passed")
    return failed


def run_specific_tests():
    """Run specific test groups."""

    print("\nQuick test commands:")
    print("  pytest tests/unit/ -v              # All unit tests")
    print("  pytest tests/integration/ -v       # All integration tests")
    print('  pytest tests/ -v -m "not slow"     # Skip Monte Carlo and timing checks')
    print("  pytest tests/ -v -m slow           # Only Monte Carlo and timing checks")
    print("  pytest tests/ -v -k throttle       # Tests matching 'throttle'")
    print("  pytest tests/ --co                 # List test collection (no run)")


if __name__ == "__main__":
    failures = run_tests(include_slow="--slow" in sys.argv)
    run_specific_tests()
    sys.exit(1 if failures else 0)
