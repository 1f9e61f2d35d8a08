#!/usr/bin/env python3
#
# Media dissection entry point, report and command line.
#

''' The dissection entry point, the format selector,
    the plain text report and the `mediadissect` command line.

    Example:

        >>> from mediadissect.dissect import dissect
        >>> result = dissect(b'ID3\\x04\\x00\\x00\\x00\\x00\\x00\\x00')
        >>> result.format
        'id3v2'
        >>> result.tree.frames
        ()
'''

from collections import namedtuple
from contextlib import closing
from getopt import GetoptError
import os
import sys

from cs.buffer import CornuCopyBuffer
from cs.cmdutils import BaseCommand, popopts
from cs.lex import cropped, cropped_repr, printt
from cs.logutils import debug, warning
from cs.pfx import Pfx

from .diagnostics import (
    Diagnostics,
    Severity,
    StructuralError,
    UNKNOWN_TYPE,
    UnknownFormatError,
)
from .id3v2 import dissect_id3v2
from .iso14496 import FTYP_BRANDS, box_type_text, dissect_isobmff

ID3V2 = 'id3v2'
ISOBMFF = 'isobmff'

# box types accepted as the first box of an ISOBMFF file
LEADING_BOX_TYPES = frozenset(
    (b'ftyp', b'styp', b'moov', b'free', b'skip', b'wide', b'mdat', b'pnot')
)

# the number of leading bytes inspected by the format selector
PROBE_SIZE = 16

# the width of values in the report
REPORT_VALUE_WIDTH = 72

class DissectOptions(namedtuple(
    'DissectOptions',
    'header_only data_only verbose raw_bytes',
    defaults=(False, False, False, False),
)):
  ''' Options controlling a dissection and its report.

      Attributes:
      * `header_only`: report only the tag header or the top level boxes
      * `data_only`: omit the tag or file summary from the report
      * `verbose`: include technical boxes, frame flags
        and informational diagnostics in the report
      * `raw_bytes`: include cropped raw bytes in the report
        and retain the payloads of bulk leaves
  '''

  @property
  def include_bulk_data(self):
    ''' Whether bulk leaf payloads are read instead of skipped.
    '''
    return self.raw_bytes

class DissectionResult(namedtuple('DissectionResult',
                                  'format tree diagnostics')):
  ''' The result of `dissect()`.

      Attributes:
      * `format`: `'id3v2'` or `'isobmff'`
      * `tree`: an `id3v2.Tag`, an `iso14496.BoxTree`,
        or `None` if the tag or box stream was structurally unusable
      * `diagnostics`: a tuple of `Diagnostic`s in the order found
  '''

  @property
  def worst(self):
    ''' The most severe diagnostic `Severity`, or `None`.
    '''
    if not self.diagnostics:
      return None
    return max(diag.severity for diag in self.diagnostics)

  @property
  def failed(self):
    ''' Whether any diagnostic was an error or fatal.
    '''
    worst = self.worst
    return worst is not None and worst >= Severity.ERROR

def detect_format(prefix) -> str:
  ''' Return the format of the data commencing with `prefix`:
      `'id3v2'` for a leading `ID3` tag
      or `'isobmff'` for a recognised leading box type.
      Raise `UnknownFormatError` otherwise.
  '''
  prefix = bytes(prefix)
  if prefix.startswith(b'ID3'):
    return ID3V2
  if len(prefix) >= 8 and prefix[4:8] in LEADING_BOX_TYPES:
    return ISOBMFF
  raise UnknownFormatError(
      f'unrecognised leading bytes {cropped_repr(prefix[:8])}', offset=0
  )

def ftyp_brand(prefix):
  ''' Return the major brand of a leading `ftyp` box in `prefix`,
      or `None` if `prefix` does not commence with an `ftyp` box.
  '''
  if len(prefix) >= 12 and bytes(prefix[4:8]) == b'ftyp':
    return box_type_text(prefix[8:12])
  return None

def open_buffer(source) -> CornuCopyBuffer:
  ''' Return a `CornuCopyBuffer` for `source`
      with its `final_offset` set where it can be determined.

      `source` may be a filename, a bytes-like object
      or a seekable binary file.
      A buffer on a caller supplied file does not close the file.
  '''
  if isinstance(source, (bytes, bytearray, memoryview)):
    return CornuCopyBuffer.from_bytes(bytes(source))
  if isinstance(source, (str, os.PathLike)):
    f = open(os.fspath(source), 'rb')  # pylint: disable=consider-using-with
    try:
      return _file_buffer(f, close=f.close)
    except Exception:
      f.close()
      raise
  return _file_buffer(source)

def _file_buffer(f, **kw):
  ''' Return a `CornuCopyBuffer` on the seekable file `f`
      from its current position.
  '''
  offset = f.tell()
  final_offset = f.seek(0, os.SEEK_END)
  f.seek(offset)
  return CornuCopyBuffer.from_file(
      f, offset=offset, final_offset=final_offset, **kw
  )

def dissect(source, options=None) -> DissectionResult:
  ''' Dissect the media in `source`, return a `DissectionResult`.

      `source` may be a filename, a bytes-like object
      or a seekable binary file.
      The byte source is released before return on every path.

      Raises `UnknownFormatError` if the data are neither an ID3v2 tag
      nor an ISOBMFF box stream.
      All other problems are returned as diagnostics.
  '''
  if options is None:
    options = DissectOptions()
  diagnostics = Diagnostics()
  bfr = open_buffer(source)
  with closing(bfr):
    prefix = bfr.peek(PROBE_SIZE, short_ok=True)
    fmt = detect_format(prefix)
    debug("format %s", fmt)
    try:
      if fmt == ID3V2:
        tree = dissect_id3v2(
            bfr, diagnostics, header_only=options.header_only
        )
      else:
        brand = ftyp_brand(prefix)
        if brand is not None and brand not in FTYP_BRANDS:
          diagnostics.info(
              UNKNOWN_TYPE,
              f'unrecognised ftyp major brand {brand!r}',
              offset=bfr.offset + 8,
              path='ftyp',
          )
        end_offset = bfr.final_offset
        if end_offset is None:
          diagnostics.warning(
              StructuralError.category(),
              'cannot determine the input size, walking to end of input',
              offset=bfr.offset,
          )
          end_offset = sys.maxsize
        tree = dissect_isobmff(
            bfr,
            end_offset,
            diagnostics,
            include_bulk_data=options.include_bulk_data,
            header_only=options.header_only,
        )
    except StructuralError as e:
      diagnostics.from_exception(e, Severity.FATAL, path=fmt)
      tree = None
  return DissectionResult(fmt, tree, diagnostics.as_tuple())

def probe(source):
  ''' Inspect the leading bytes of `source`.
      Return `(format,brand)` where `brand` is the `ftyp` major brand
      or `None`.
      Raises `UnknownFormatError` as for `detect_format`.
  '''
  bfr = open_buffer(source)
  with closing(bfr):
    prefix = bfr.peek(PROBE_SIZE, short_ok=True)
  return detect_format(prefix), ftyp_brand(prefix)

##############################################################################
# report

def _value(s):
  return cropped(str(s), max_length=REPORT_VALUE_WIDTH)

def id3v2_report_rows(tag, options):
  ''' Return a list of report rows for the ID3v2 `tag`.
  '''
  rows = []
  header = tag.header
  if not options.data_only:
    rows.append(('ID3v2 tag', f'version 2.{header.major}.{header.revision}'))
    rows.append(('  offset', f'{tag.offset:#010x}'))
    rows.append(('  size', f'{header.size} bytes'))
    rows.append(('  flags', ', '.join(header.flag_names()) or 'none'))
    if tag.extended_header is not None:
      rows.append(('  extended header', f'{tag.extended_header.size} bytes'))
  if options.header_only or tag.oversized:
    return rows
  rows.append((f'frames ({len(tag.frames)})',))
  for depth, frame in tag.walk():
    indent = '  ' * (depth + 1)
    if frame.valid:
      summary = f'{frame.description}: {frame.content}'
    else:
      summary = f'{frame.description}: invalid size'
    rows.append(
        (
            f'{indent}{frame.frame_id}',
            f'{frame.offset:#010x} {frame.size:8d}',
            _value(summary),
        )
    )
    if options.verbose and frame.flags:
      rows.append((f'{indent}  flags', ', '.join(frame.flag_names())))
    if options.raw_bytes and frame.data:
      rows.append(
          (f'{indent}  raw', cropped_repr(bytes(frame.data), max_length=64))
      )
  return rows

def _box_rows(box, depth, options, rows):
  indent = '  ' * (depth + 1)
  notes = []
  if box.kind == box.BULK:
    notes.append(box.BULK)
  if box.truncated:
    notes.append('truncated')
  summary = box.description
  if box.content is not None:
    summary = f'{summary}: {box.content}'
  rows.append(
      (
          f'{indent}{box.box_type}',
          f'{box.offset:#010x} {box.size:8d}',
          _value(summary),
          ' '.join(f'[{note}]' for note in notes),
      )
  )
  if options.raw_bytes and box.data:
    rows.append((f'{indent}  raw', cropped_repr(bytes(box.data), max_length=64)))
  for child in box.presented_children(options.verbose):
    _box_rows(child, depth + 1, options, rows)

def isobmff_report_rows(tree, options):
  ''' Return a list of report rows for the ISOBMFF `tree`.
  '''
  rows = []
  if not options.data_only:
    rows.append(
        (
            'ISOBMFF',
            f'{len(tree.boxes)} top level boxes,'
            f' {tree.end_offset - tree.start_offset} bytes',
        )
    )
    file_type = tree.file_type
    if file_type is not None:
      rows.append(('  file type', _value(file_type)))
  rows.append(('boxes',))
  for box in tree.presented_boxes(options.verbose):
    _box_rows(box, 0, options, rows)
  return rows

def diagnostic_report_rows(diagnostics, options):
  ''' Return a list of report rows for `diagnostics`.
      Informational diagnostics are only reported if `options.verbose`.
  '''
  shown = [
      diag for diag in diagnostics
      if options.verbose or diag.severity > Severity.INFO
  ]
  if not shown:
    return []
  rows = [(f'diagnostics ({len(shown)})',)]
  rows.extend((f'  {diag}',) for diag in shown)
  return rows

def report_rows(result, options=None):
  ''' Return a list of report rows for the `DissectionResult` `result`
      suitable for `cs.lex.printt`.
  '''
  if options is None:
    options = DissectOptions()
  if result.tree is None:
    rows = [(result.format, 'no usable structure')]
  elif result.format == ID3V2:
    rows = id3v2_report_rows(result.tree, options)
  else:
    rows = isobmff_report_rows(result.tree, options)
  rows.extend(diagnostic_report_rows(result.diagnostics, options))
  return rows

def print_report(result, options=None, file=None):
  ''' Print the report for `result` to `file`, default `sys.stdout`.
  '''
  printt(*report_rows(result, options), file=file)

##############################################################################
# command line

def main(argv=None):
  ''' Command line mode.
  '''
  return MediaDissectCommand(argv).run()

class MediaDissectCommand(BaseCommand):
  ''' Report the metadata structure of MP3 and MP4 family media files.
  '''

  GETOPT_SPEC = ''

  @popopts(
      header_only='Report only the tag header or the top level boxes.',
      data_only='Omit the tag or file summary.',
      raw='Include the raw bytes of frames and boxes.',
  )
  def cmd_scan(self, argv):
    ''' Usage: {cmd} [--header-only] [--data-only] [--raw] paths...
          Report the ID3v2 frames or ISOBMFF boxes of each media file.
          The exit status is 1 if any file is unrecognised
          or had errors.
    '''
    if not argv:
      raise GetoptError("missing paths")
    options = self.options
    dissect_options = DissectOptions(
        header_only=options.header_only,
        data_only=options.data_only,
        verbose=options.verbose,
        raw_bytes=options.raw,
    )
    xit = 0
    first = True
    for path in argv:
      with Pfx(path):
        if first:
          first = False
        else:
          print()
        print(path)
        try:
          result = dissect(path, dissect_options)
        except (OSError, UnknownFormatError) as e:
          warning("%s", e)
          xit = 1
          continue
        print_report(result, dissect_options)
        if result.failed:
          xit = 1
    return xit

  def cmd_probe(self, argv):
    ''' Usage: {cmd} paths...
          Report the detected format of each media file.
    '''
    if not argv:
      raise GetoptError("missing paths")
    xit = 0
    table = []
    for path in argv:
      with Pfx(path):
        try:
          fmt, brand = probe(path)
        except (OSError, UnknownFormatError) as e:
          warning("%s", e)
          table.append((path, 'unknown'))
          xit = 1
          continue
        if brand is None:
          table.append((path, fmt))
        else:
          table.append((path, fmt, f'brand {brand!r}'))
    printt(*table)
    return xit

if __name__ == '__main__':
  sys.exit(main(sys.argv))
