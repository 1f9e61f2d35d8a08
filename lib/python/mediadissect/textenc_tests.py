#!/usr/bin/env python3
#
# Unit tests for mediadissect.textenc.
#

''' Unit tests for mediadissect.textenc.
'''

import sys
import unittest

from cs.logutils import setup_logging

from .diagnostics import EncodingViolation
from .textenc import (
    TextEncoding,
    decode_strings,
    split_latin1,
    split_terminated,
)

class TestTextEncoding(unittest.TestCase):
  ''' Tests for `TextEncoding`.
  '''

  def test00from_byte(self):
    self.assertIs(TextEncoding.from_byte(0), TextEncoding.ISO_8859_1)
    self.assertIs(TextEncoding.from_byte(3), TextEncoding.UTF_8)
    with self.assertRaises(EncodingViolation):
      TextEncoding.from_byte(4)

  def test01versions(self):
    self.assertTrue(TextEncoding.UTF_16.valid_for_version(3))
    self.assertFalse(TextEncoding.UTF_8.valid_for_version(3))
    self.assertFalse(TextEncoding.UTF_16BE.valid_for_version(3))
    self.assertTrue(TextEncoding.UTF_8.valid_for_version(4))

  def test02decode(self):
    self.assertEqual(TextEncoding.ISO_8859_1.decode(b'caf\xe9'), 'café')
    self.assertEqual(TextEncoding.UTF_8.decode('café'.encode()), 'café')
    self.assertEqual(TextEncoding.UTF_16.decode(b'\xff\xfeh\0i\0'), 'hi')
    self.assertEqual(TextEncoding.UTF_16.decode(b'\xfe\xff\0h\0i'), 'hi')
    # no BOM: big endian
    self.assertEqual(TextEncoding.UTF_16.decode(b'\0h\0i'), 'hi')
    self.assertEqual(TextEncoding.UTF_16BE.decode(b'\0h\0i'), 'hi')
    # malformed UTF-8 decodes with replacement characters
    self.assertEqual(TextEncoding.UTF_8.decode(b'a\xffb'), 'a�b')

class TestStrings(unittest.TestCase):
  ''' Tests for the string splitting functions.
  '''

  def test00decode_strings(self):
    self.assertEqual(decode_strings(0, b'a\0b\0'), ['a', 'b'])
    self.assertEqual(decode_strings(3, b'Hello\0\0\0\0'), ['Hello'])
    self.assertEqual(decode_strings(3, b'no terminator'), ['no terminator'])
    self.assertEqual(decode_strings(0, b'\0\0\0'), [])
    self.assertEqual(
        decode_strings(1, b'\xff\xfea\0\0\0\xff\xfeb\0'), ['a', 'b']
    )

  def test01wide_alignment(self):
    # 0x0100 0x0041: the 00 00 straddling the code units is not a terminator
    self.assertEqual(decode_strings(2, b'\x01\x00\x00\x41'), ['ĀA'])
    self.assertEqual(TextEncoding.UTF_16BE.find_terminator(b'\x01\x00\x00\x41'), -1)
    self.assertEqual(TextEncoding.UTF_16BE.find_terminator(b'\0A\0\0'), 2)

  def test02split_terminated(self):
    self.assertEqual(
        split_terminated(TextEncoding.UTF_16, b'\xff\xfeh\0i\0\0\0rest'),
        ('hi', b'rest'),
    )
    self.assertEqual(split_terminated(TextEncoding.UTF_8, b'abc'), ('abc', b''))
    self.assertEqual(split_latin1(b'image/png\0\x03'), ('image/png', b'\x03'))

def selftest(argv):
  ''' Run the unit tests.
  '''
  setup_logging(__file__)
  unittest.main(__name__, None, argv, failfast=True)

if __name__ == '__main__':
  selftest(sys.argv)
