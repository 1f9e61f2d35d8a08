#!/usr/bin/env python3
#
# iTunes metadata typed values.
#

''' Decoding of the typed values in iTunes metadata `data` boxes.

    An iTunes metadata item such as `©nam` or `trkn` is a container
    box holding a `data` leaf box whose payload is:
    * 1 reserved byte
    * a 3 byte big endian type code
    * a 4 byte locale field
    * the value bytes, interpreted according to the type code
'''

from collections import namedtuple
from enum import IntEnum

from cs.binary import BinaryStruct

from .diagnostics import (
    EncodingViolation,
    Severity,
    SizeViolation,
    UNKNOWN_TYPE,
)
from .primitives import read_int_be, read_uint_be

DataBoxHeader = BinaryStruct(
    'DataBoxHeader', '>B3s4s', 'reserved type_bs locale_bs'
)

# the "A of B" payload of trkn and disk items
AofBStruct = BinaryStruct('AofBStruct', '>HHH', 'reserved number total')

# the widths of the integer types
INTEGER_WIDTHS = (1, 2, 4, 8)

class ItunesDataType(IntEnum):
  ''' The well known iTunes `data` box type codes.
  '''
  IMPLICIT = 0x00
  UTF8 = 0x01
  UTF16BE = 0x02
  JPEG = 0x0d
  PNG = 0x0e
  SIGNED_INT = 0x15
  UNSIGNED_INT = 0x16
  BMP = 0x1b

  @classmethod
  def label_for(cls, type_code):
    ''' A human readable label for the numeric `type_code`.
    '''
    if type_code is None:
      return 'Unknown'
    try:
      return _TYPE_LABELS[cls(type_code)]
    except ValueError:
      return f'Binary (0x{type_code:02x})'

_TYPE_LABELS = {
    ItunesDataType.IMPLICIT: 'Implicit',
    ItunesDataType.UTF8: 'UTF-8',
    ItunesDataType.UTF16BE: 'UTF-16 BE',
    ItunesDataType.JPEG: 'JPEG Image',
    ItunesDataType.PNG: 'PNG Image',
    ItunesDataType.SIGNED_INT: 'Signed Integer',
    ItunesDataType.UNSIGNED_INT: 'Unsigned Integer',
    ItunesDataType.BMP: 'BMP Image',
}

_IMAGE_FORMATS = {
    ItunesDataType.JPEG: 'JPEG',
    ItunesDataType.PNG: 'PNG',
    ItunesDataType.BMP: 'BMP',
}

class TextValue(namedtuple('TextValue', 'text')):
  ''' A UTF-8 or UTF-16BE text value.
  '''

  def __str__(self):
    return self.text

class IntegerValue(namedtuple('IntegerValue', 'value signed')):
  ''' A signed or unsigned integer value.
  '''

  def __str__(self):
    return str(self.value)

class ImageValue(namedtuple('ImageValue', 'format size')):
  ''' An image, recorded by format and length only.
  '''

  def __str__(self):
    return f'{self.format} image, {self.size} bytes'

class TrackNumber(namedtuple('TrackNumber', 'number total')):
  ''' A `trkn` value; `total` is `None` if unknown.
  '''

  def __str__(self):
    return f'{self.number} of {"?" if self.total is None else self.total}'

class DiskNumber(namedtuple('DiskNumber', 'number total')):
  ''' A `disk` value; `total` is `None` if unknown.
  '''

  def __str__(self):
    return f'{self.number} of {"?" if self.total is None else self.total}'

class BinaryValue(namedtuple('BinaryValue', 'type_code data')):
  ''' Raw bytes, tagged with the `data` box type code.
  '''

  def __str__(self):
    return f'{ItunesDataType.label_for(self.type_code)}: {len(self.data)} bytes'

class ItunesData(namedtuple('ItunesData', 'item_type type_code locale value')):
  ''' The decoded contents of a `data` box.

      Attributes:
      * `item_type`: the enclosing item's box type, eg `'©nam'` or `'trkn'`
      * `type_code`: the numeric type code
      * `locale`: the 4 byte locale field as an `int`
      * `value`: the decoded value
  '''

  @property
  def type_label(self):
    ''' A human readable label for the type code.
    '''
    return ItunesDataType.label_for(self.type_code)

  def __str__(self):
    return f'{self.item_type} ({self.type_label}): {self.value}'

def decode_a_of_b(item_type, payload):
  ''' Decode the "A of B" payload of a `trkn` or `disk` item:
      2 reserved bytes, the 2 byte number and the 2 byte total.
      A total of `0` means unknown.
  '''
  if len(payload) < AofBStruct.length:
    raise SizeViolation(
        f'{item_type} payload of {len(payload)} bytes is too short,'
        f' need {AofBStruct.length}'
    )
  aofb, _ = AofBStruct.parse_bytes(bytes(payload), length=AofBStruct.length)
  value_class = DiskNumber if item_type == 'disk' else TrackNumber
  return value_class(aofb.number, aofb.total or None)

def decode_integer(payload, signed):
  ''' Decode a big endian integer whose width is the payload length.
      Raise `EncodingViolation` if the width is not 1, 2, 4 or 8 bytes.
  '''
  width = len(payload)
  if width not in INTEGER_WIDTHS:
    raise EncodingViolation(f'invalid integer width {width} bytes')
  read = read_int_be if signed else read_uint_be
  return IntegerValue(read(payload, 0, width), signed)

def decode_value(item_type, type_code, payload):
  ''' Decode the value bytes `payload` of a `data` box
      in the item `item_type` with type code `type_code`.
  '''
  if item_type in ('trkn', 'disk') and type_code in (
      ItunesDataType.IMPLICIT,
      ItunesDataType.SIGNED_INT,
      ItunesDataType.UNSIGNED_INT,
  ) and len(payload) >= AofBStruct.length:
    return decode_a_of_b(item_type, payload)
  if type_code == ItunesDataType.UTF8:
    return TextValue(bytes(payload).decode('utf-8', errors='replace'))
  if type_code == ItunesDataType.UTF16BE:
    return TextValue(bytes(payload).decode('utf-16-be', errors='replace'))
  if type_code in _IMAGE_FORMATS:
    return ImageValue(_IMAGE_FORMATS[ItunesDataType(type_code)], len(payload))
  if type_code == ItunesDataType.SIGNED_INT:
    return decode_integer(payload, True)
  if type_code == ItunesDataType.UNSIGNED_INT:
    return decode_integer(payload, False)
  return BinaryValue(type_code, bytes(payload))

def decode_data_box(item_type, data, diagnostics, *, offset=None, path=''):
  ''' Decode the payload `data` of a `data` box within the item `item_type`.
      Return an `ItunesData`.

      This never raises: problems are recorded in `diagnostics`
      and the value degrades to a `BinaryValue`.
  '''
  data = bytes(data)
  if len(data) < DataBoxHeader.length:
    diagnostics.warning(
        SizeViolation.category(),
        f'data box payload of {len(data)} bytes is shorter'
        f' than its {DataBoxHeader.length} byte header',
        offset=offset,
        path=path,
    )
    return ItunesData(item_type, None, None, BinaryValue(None, data))
  hdr, _ = DataBoxHeader.parse_bytes(data, length=DataBoxHeader.length)
  type_code = int.from_bytes(hdr.type_bs, 'big')
  locale = int.from_bytes(hdr.locale_bs, 'big')
  payload = data[DataBoxHeader.length:]
  try:
    value = decode_value(item_type, type_code, payload)
  except (EncodingViolation, SizeViolation) as e:
    diagnostics.from_exception(e, Severity.WARNING, offset=offset, path=path)
    value = BinaryValue(type_code, payload)
  else:
    if isinstance(value, BinaryValue) and type_code != ItunesDataType.IMPLICIT:
      diagnostics.info(
          UNKNOWN_TYPE,
          f'unrecognised data type code 0x{type_code:02x}',
          offset=offset,
          path=path,
      )
  return ItunesData(item_type, type_code, locale, value)

def decode_mean_name(data):
  ''' Decode the payload of a `mean` or `name` box of a `----` item:
      4 bytes of version and flags followed by UTF-8 text.
  '''
  if len(data) < 4:
    raise SizeViolation(f'mean/name payload of {len(data)} bytes is too short')
  return bytes(data[4:]).decode('utf-8', errors='replace')
