#!/usr/bin/env python3
"""
Test runner for the pass-running preprocessor driver (passcpp).

Usage:
    python run_tests.py              # Run all tests
    python run_tests.py --unit       # Skip tests that spawn a preprocessor
    python run_tests.py --driver     # Run only the end-to-end driver tests
    python run_tests.py -v           # Verbose output
"""

import os
import sys
import shutil
import unittest
import argparse
from pathlib import Path

UNIT_MODULES = ['test_arguments', 'test_program', 'test_passes']
DRIVER_MODULES = ['test_driver']


def load_modules(names) -> unittest.TestSuite:
    loader = unittest.TestLoader()
    suite = unittest.TestSuite()
    for name in names:
        suite.addTests(loader.loadTestsFromName(name))
    return suite


def run_suite(title: str, names, verbosity: int) -> bool:
    print("=" * 60)
    print(f"Running {title}")
    print("=" * 60)
    runner = unittest.TextTestRunner(verbosity=verbosity)
    result = runner.run(load_modules(names))
    return result.wasSuccessful()


def main():
    parser = argparse.ArgumentParser(description="Run passcpp tests")
    parser.add_argument('-v', '--verbose', action='count', default=1,
                        help="Increase verbosity (can be repeated)")
    parser.add_argument('--unit', action='store_true',
                        help="Run only unit tests")
    parser.add_argument('--driver', action='store_true',
                        help="Run only driver tests")

    args = parser.parse_args()

    os.chdir(Path(__file__).parent)
    sys.path.insert(0, str(Path(__file__).parent))
    sys.path.insert(0, str(Path(__file__).parent.parent))

    run_all = not args.unit and not args.driver
    success = True

    if run_all or args.unit:
        if not run_suite("Unit Tests", UNIT_MODULES, args.verbose):
            success = False

    if run_all or args.driver:
        if not shutil.which('cc'):
            print("WARNING: No C compiler found; real preprocessor tests will be skipped.")
        if not run_suite("Driver Tests", DRIVER_MODULES, args.verbose):
            success = False

    print()
    print("=" * 60)
    if success:
        print("All tests passed!")
    else:
        print("Some tests failed!")
    print("=" * 60)

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
