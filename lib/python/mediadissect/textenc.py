#!/usr/bin/env python3
#
# ID3v2 text encodings.
#

''' Decoding of the four ID3v2 text encodings.

    Text frames lead with an encoding byte:
    * `0`: ISO-8859-1, terminated by a single NUL
    * `1`: UTF-16 with a leading byte order mark, terminated by 2 NULs
    * `2`: UTF-16BE without a byte order mark, terminated by 2 NULs (ID3v2.4)
    * `3`: UTF-8, terminated by a single NUL (ID3v2.4)

    Decoding never fails: malformed sequences decode with the
    Unicode replacement character.
'''

from enum import IntEnum

from .diagnostics import EncodingViolation

class TextEncoding(IntEnum):
  ''' An ID3v2 text encoding byte.
  '''
  ISO_8859_1 = 0
  UTF_16 = 1
  UTF_16BE = 2
  UTF_8 = 3

  @classmethod
  def from_byte(cls, encoding_byte):
    ''' Return the `TextEncoding` for `encoding_byte`.
        Raise `EncodingViolation` for an unknown encoding byte.
    '''
    try:
      return cls(encoding_byte)
    except ValueError as e:
      raise EncodingViolation(
          f'unknown text encoding byte 0x{encoding_byte:02x}'
      ) from e

  @property
  def label(self):
    ''' A human readable name for this encoding.
    '''
    return _ENCODING_LABELS[self]

  @property
  def terminator(self):
    ''' The string terminator for this encoding.
    '''
    return b'\0\0' if self.is_wide else b'\0'

  @property
  def is_wide(self):
    ''' Whether this is a 2 byte per code unit encoding.
    '''
    return self in (TextEncoding.UTF_16, TextEncoding.UTF_16BE)

  def valid_for_version(self, major_version):
    ''' Test whether this encoding is defined for ID3v2.`major_version`.
        UTF-16BE and UTF-8 arrived with ID3v2.4.
    '''
    if self in (TextEncoding.ISO_8859_1, TextEncoding.UTF_16):
      return True
    return major_version >= 4

  def decode(self, bs):
    ''' Decode a single unterminated string `bs`.
    '''
    bs = bytes(bs)
    if self == TextEncoding.ISO_8859_1:
      return bs.decode('iso8859-1')
    if self == TextEncoding.UTF_8:
      return bs.decode('utf-8', errors='replace')
    if self == TextEncoding.UTF_16:
      # each string carries its own BOM, absent a BOM assume big endian
      if bs[:2] == b'\xff\xfe':
        return bs[2:].decode('utf-16-le', errors='replace')
      if bs[:2] == b'\xfe\xff':
        return bs[2:].decode('utf-16-be', errors='replace')
    return bs.decode('utf-16-be', errors='replace')

  def find_terminator(self, bs, start=0):
    ''' Return the offset of the first terminator in `bs` at or after `start`,
        or `-1` if there is none.
        Wide encodings are searched on 2 byte alignment from `start`.
    '''
    if not self.is_wide:
      return bs.find(b'\0', start)
    for pos in range(start, len(bs) - 1, 2):
      if bs[pos] == 0 and bs[pos + 1] == 0:
        return pos
    return -1

_ENCODING_LABELS = {
    TextEncoding.ISO_8859_1: 'ISO-8859-1',
    TextEncoding.UTF_16: 'UTF-16 with BOM',
    TextEncoding.UTF_16BE: 'UTF-16BE',
    TextEncoding.UTF_8: 'UTF-8',
}

def decode_strings(encoding, bs):
  ''' Decode the terminator separated strings in `bs`
      using the `TextEncoding` `encoding`.
      Return a list of the nonempty strings.

      A trailing string without a terminator is still included,
      and NUL padding yields no strings.
  '''
  encoding = TextEncoding(encoding)
  bs = bytes(bs)
  term_len = len(encoding.terminator)
  strings = []
  pos = 0
  while pos < len(bs):
    end = encoding.find_terminator(bs, pos)
    if end < 0:
      end = len(bs)
    s = encoding.decode(bs[pos:end])
    if s:
      strings.append(s)
    pos = end + term_len
  return strings

def split_terminated(encoding, bs):
  ''' Split the first terminated string from `bs`.
      Return `(text,tail)` where `text` is the decoded string
      and `tail` is the raw bytes after its terminator.
      If there is no terminator the whole of `bs` is the string
      and `tail` is empty.
  '''
  encoding = TextEncoding(encoding)
  bs = bytes(bs)
  end = encoding.find_terminator(bs)
  if end < 0:
    return encoding.decode(bs), b''
  return encoding.decode(bs[:end]), bs[end + len(encoding.terminator):]

def split_latin1(bs):
  ''' Split a NUL terminated ISO-8859-1 string from `bs`.
      Return `(text,tail)` as for `split_terminated`.
  '''
  return split_terminated(TextEncoding.ISO_8859_1, bs)
