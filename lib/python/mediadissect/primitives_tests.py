#!/usr/bin/env python3
#
# Unit tests for mediadissect.primitives.
#

''' Unit tests for mediadissect.primitives.
'''

import sys
import unittest

from icontract import ViolationError

from cs.buffer import CornuCopyBuffer
from cs.logutils import setup_logging

from .diagnostics import BoundsError, EncodingViolation
from .primitives import (
    SYNCHSAFE_LIMIT,
    SynchsafeInt,
    decode_synchsafe,
    encode_synchsafe,
    read_int_be,
    read_uint_be,
    read_uint_le,
    remove_unsynchronisation,
    synchsafe_fault,
    take_bounded,
)

class TestSynchsafe(unittest.TestCase):
  ''' Tests for the synchsafe integer codec.
  '''

  def test00encode(self):
    self.assertEqual(encode_synchsafe(0), b'\0\0\0\0')
    self.assertEqual(encode_synchsafe(127), b'\0\0\0\x7f')
    self.assertEqual(encode_synchsafe(128), b'\0\0\x01\0')
    self.assertEqual(encode_synchsafe(SYNCHSAFE_LIMIT - 1), b'\x7f\x7f\x7f\x7f')

  def test01decode(self):
    self.assertEqual(decode_synchsafe(b'\0\0\x02\x01'), (257, False))
    self.assertEqual(decode_synchsafe(b'\x7f\x7f\x7f\x7f'),
                     (SYNCHSAFE_LIMIT - 1, False))

  def test02round_trip(self):
    for value in (0, 1, 127, 128, 255, 16383, 16384, 1000000,
                  SYNCHSAFE_LIMIT - 1):
      with self.subTest(value=value):
        encoded = encode_synchsafe(value)
        self.assertFalse(synchsafe_fault(encoded))
        self.assertEqual(decode_synchsafe(encoded).value, value)

  def test03fault(self):
    # a byte with the high bit set reads as plain big endian
    decoded = decode_synchsafe(b'\0\0\0\x80')
    self.assertTrue(decoded.fault)
    self.assertEqual(decoded.value, 128)

  def test04out_of_range(self):
    with self.assertRaises(ViolationError):
      encode_synchsafe(SYNCHSAFE_LIMIT)
    with self.assertRaises(ViolationError):
      encode_synchsafe(-1)
    with self.assertRaises(ViolationError):
      decode_synchsafe(b'\0\0\0')

  def test05binary_field(self):
    bfr = CornuCopyBuffer.from_bytes(b'\0\0\x01\x7f\0\0\0\x80')
    self.assertEqual(SynchsafeInt.parse_value(bfr), 255)
    with self.assertRaises(EncodingViolation):
      SynchsafeInt.parse_value(bfr)
    self.assertEqual(SynchsafeInt.transcribe_value(255), b'\0\0\x01\x7f')

class TestUnsynchronisation(unittest.TestCase):
  ''' Tests for `remove_unsynchronisation`.
  '''

  def test00removal(self):
    self.assertEqual(remove_unsynchronisation(b'\xff\x00\xe0'), b'\xff\xe0')
    self.assertEqual(remove_unsynchronisation(b'\xff\x00\x00'), b'\xff\x00')
    self.assertEqual(remove_unsynchronisation(b'a\xff\x00b\xff\x00'), b'a\xffb\xff')

  def test01idempotent(self):
    for bs in (b'', b'plain text', b'\xff\xfe\x00\xff', bytes(range(256))):
      with self.subTest(bs=bs):
        if b'\xff\x00' not in bs:
          self.assertEqual(remove_unsynchronisation(bs), bs)
          self.assertEqual(
              remove_unsynchronisation(remove_unsynchronisation(bs)), bs
          )

class TestBoundedReads(unittest.TestCase):
  ''' Tests for the bounded integer readers.
  '''

  def test00reads(self):
    bs = b'\x01\x02\x03\x04'
    self.assertEqual(read_uint_be(bs, 0, 2), 0x0102)
    self.assertEqual(read_uint_le(bs, 0, 2), 0x0201)
    self.assertEqual(read_uint_be(bs, 1, 3), 0x020304)
    self.assertEqual(read_int_be(b'\xff\xfe', 0, 2), -2)
    self.assertEqual(read_int_be(b'\x7f', 0, 1), 127)

  def test01overrun(self):
    with self.assertRaises(BoundsError):
      read_uint_be(b'\x01\x02', 1, 2)
    with self.assertRaises(BoundsError):
      read_uint_be(b'\x01\x02', -1, 1)

  def test02take_bounded(self):
    bfr = CornuCopyBuffer.from_bytes(b'abcdef')
    self.assertEqual(bytes(take_bounded(bfr, 2, 4)), b'ab')
    with self.assertRaises(BoundsError):
      take_bounded(bfr, 3, 4)
    with self.assertRaises(BoundsError):
      take_bounded(bfr, 10, 100)

def selftest(argv):
  ''' Run the unit tests.
  '''
  setup_logging(__file__)
  unittest.main(__name__, None, argv, failfast=True)

if __name__ == '__main__':
  selftest(sys.argv)
