#!/usr/bin/env python3
#
# Byte level primitives shared by the ID3v2 and ISOBMFF dissectors.
#

''' Byte level primitives shared by the dissectors:
    synchsafe integers, unsynchronisation removal
    and bounded integer reads.

    ID3v2 stores some sizes as "synchsafe" integers,
    4 bytes of 7 bits each with the high bit clear,
    so that no size field can look like an MPEG sync pattern.
'''

from collections import namedtuple

from icontract import require
from typeguard import typechecked

from cs.binary import BinarySingleValue
from cs.buffer import CornuCopyBuffer

from .diagnostics import BoundsError, EncodingViolation

SYNCHSAFE_LIMIT = 1 << 28

class SynchsafeDecode(namedtuple('SynchsafeDecode', 'value fault')):
  ''' The result of decoding a synchsafe field.

      Attributes:
      * `value`: the decoded value; if `fault` this is the best effort
        big endian reading of the raw bytes
      * `fault`: true if any byte had its high bit set
  '''

def synchsafe_fault(bs) -> bool:
  ''' Test whether any byte in `bs` has its high bit set.
  '''
  return any(b & 0x80 for b in bs)

@require(lambda bs: len(bs) == 4)
def decode_synchsafe(bs) -> SynchsafeDecode:
  ''' Decode the 4 byte synchsafe field `bs`.
      Return a `SynchsafeDecode(value,fault)`.

      If any byte has its high bit set the field is malformed;
      rather than failing, the bytes are read as a plain big endian
      integer and `fault` is true, leaving the caller to decide
      how serious that is.
  '''
  if synchsafe_fault(bs):
    return SynchsafeDecode(int.from_bytes(bs, 'big'), True)
  return SynchsafeDecode(bs[0] << 21 | bs[1] << 14 | bs[2] << 7 | bs[3], False)

@require(lambda value: 0 <= value < SYNCHSAFE_LIMIT)
@typechecked
def encode_synchsafe(value: int) -> bytes:
  ''' Encode `value` as a 4 byte synchsafe field.
  '''
  return bytes(
      (
          (value >> 21) & 0x7f,
          (value >> 14) & 0x7f,
          (value >> 7) & 0x7f,
          value & 0x7f,
      )
  )

class SynchsafeInt(BinarySingleValue, value_type=int):
  ''' A strict ID3v2 synchsafe integer field for use with `CornuCopyBuffer`s.
      Parsing a malformed field raises `EncodingViolation`.
  '''

  @classmethod
  def parse_value(cls, bfr: CornuCopyBuffer) -> int:
    ''' Read a synchsafe field from `bfr`, return the value.
    '''
    offset = bfr.offset
    size_bs = bfr.take(4)
    value, fault = decode_synchsafe(size_bs)
    if fault:
      raise EncodingViolation(
          "invalid synchsafe bytes, some have the high bit set: %r" %
          (["0x%02x" % b for b in size_bs],),
          offset=offset,
      )
    return value

  @staticmethod
  def transcribe_value(value):
    ''' Transcribe `value` as a synchsafe field.
    '''
    if not 0 <= value < SYNCHSAFE_LIMIT:
      raise ValueError("value %d out of range" % (value,))
    return encode_synchsafe(value)

def remove_unsynchronisation(bs) -> bytes:
  ''' Remove the unsynchronisation stuffing from `bs`:
      every `0x00` which immediately follows a `0xff` is dropped.
  '''
  # each match consumes its 0xff, so 0xff 0xff 0x00 drops only the 0x00
  return bytes(bs).replace(b'\xff\x00', b'\xff')

def read_uint(bs, offset, length, byteorder='big') -> int:
  ''' Read an unsigned integer of `length` bytes from `bs` at `offset`.
      Raise `BoundsError` if the read would pass the end of `bs`.
  '''
  end_offset = offset + length
  if offset < 0 or end_offset > len(bs):
    raise BoundsError(
        f'read of {length} bytes at offset {offset} exceeds region of {len(bs)} bytes',
        offset=offset,
    )
  return int.from_bytes(bs[offset:end_offset], byteorder)

def read_uint_be(bs, offset, length) -> int:
  ''' Read a big endian unsigned integer, as for `read_uint`.
  '''
  return read_uint(bs, offset, length, 'big')

def read_uint_le(bs, offset, length) -> int:
  ''' Read a little endian unsigned integer, as for `read_uint`.
  '''
  return read_uint(bs, offset, length, 'little')

def read_int_be(bs, offset, length) -> int:
  ''' Read a big endian signed integer, as for `read_uint`.
  '''
  value = read_uint_be(bs, offset, length)
  sign_bit = 1 << (length * 8 - 1)
  return value - (sign_bit << 1) if value & sign_bit else value

def take_bounded(bfr: CornuCopyBuffer, size: int, end_offset: int) -> bytes:
  ''' Take `size` bytes from `bfr`, which must not pass `end_offset`.
      Raise `BoundsError` if the region or the input is too short.
  '''
  offset = bfr.offset
  if offset + size > end_offset:
    raise BoundsError(
        f'read of {size} bytes at offset {offset} passes region end {end_offset}',
        offset=offset,
    )
  try:
    return bfr.take(size)
  except EOFError as e:
    raise BoundsError(
        f'read of {size} bytes at offset {offset}: {e}', offset=offset
    ) from e
