#!/usr/bin/env python3

''' Command line access to the media dissectors.
'''

import sys

from .dissect import main

if __name__ == '__main__':
  sys.exit(main(sys.argv))
