#!/usr/bin/env python3
#
# This file is open source software, licensed to you under the terms
# of the Apache License, Version 2.0 (the "License").  See the NOTICE file
# distributed with this work for additional information regarding copyright
# ownership.  You may not use this file except in compliance with the License.
#
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing,
# software distributed under the License is distributed on an
# "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY
# KIND, either express or implied.  See the License for the
# specific language governing permissions and limitations
# under the License.
#

import argparse
import os
import sys
import unittest

ROOT_PATH = os.path.dirname(os.path.abspath(__file__))
TESTS_PATH = os.path.join(ROOT_PATH, 'tests', 'unit')
sys.path.insert(0, ROOT_PATH)

if __name__ == "__main__":

    parser = argparse.ArgumentParser(description="nodetuner test runner")
    parser.add_argument('--name',  action="store", help="Run only test modules whose name contains given string")
    parser.add_argument('--failfast', action="store_true", help="Stop on the first failure")
    parser.add_argument('--verbose', '-v', action = 'store_true', default = False,
                        help = 'Verbose reporting')
    args = parser.parse_args()

    pattern = '*{}*_test.py'.format(args.name) if args.name else '*_test.py'
    suite = unittest.defaultTestLoader.discover(TESTS_PATH, pattern=pattern, top_level_dir=TESTS_PATH)

    runner = unittest.TextTestRunner(verbosity=2 if args.verbose else 1, failfast=args.failfast)
    result = runner.run(suite)
    sys.exit(0 if result.wasSuccessful() else 1)
