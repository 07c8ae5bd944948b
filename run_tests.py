#!/usr/bin/env python
"""Test runner for the recurring billing engine."""

import os
import sys
import unittest

TEST_DIRS = ["tests", "tests/billing", "tests/notify", "tests/scheduler"]


def run_tests():
    """Discover and run all tests in the tests directories."""
    root = os.path.abspath(os.path.dirname(__file__))
    # Project root for recurbill, tests/ for the shared conftest
    sys.path.insert(0, root)
    sys.path.insert(0, os.path.join(root, "tests"))

    test_loader = unittest.TestLoader()
    test_suite = unittest.TestSuite()
    for test_dir in TEST_DIRS:
        start = os.path.join(root, test_dir)
        test_suite.addTests(test_loader.discover(start, pattern="test_*.py", top_level_dir=start))

    # Run tests with verbosity
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(test_suite)

    # Return exit code based on test results
    return 0 if result.wasSuccessful() else 1


if __name__ == "__main__":
    sys.exit(run_tests())
