#!/usr/bin/env python3
#
# Dissection diagnostics and the error taxonomy.
#

''' Diagnostics for the media dissectors.

    Dissection never stops at the first malformed unit.
    Instead each problem found is recorded as a `Diagnostic`
    in a `Diagnostics` collection which travels with the parse
    and is returned alongside the tree.

    The exception classes here are raised inside a single unit
    (a frame, a box, a field) and are turned into diagnostics
    at the unit boundary by the dissectors.
    Only `UnknownFormatError` escapes to the caller of `dissect()`.
'''

from collections import namedtuple
from enum import IntEnum

from cs.logutils import debug, warning
from cs.pfx import Pfx

class Severity(IntEnum):
  ''' The severity of a `Diagnostic`, ordered from least to most severe.
  '''
  INFO = 0
  WARNING = 1
  ERROR = 2
  FATAL = 3

  def __str__(self):
    return self.name.lower()

class DissectionError(ValueError):
  ''' Base class for problems found while dissecting media.

      Instances carry an optional `offset`, the absolute byte offset
      of the problem.
  '''

  def __init__(self, msg, offset=None):
    super().__init__(msg)
    self.offset = offset

  @classmethod
  def category(cls):
    ''' The diagnostic category for this class of error.
    '''
    return cls.__name__

class StructuralError(DissectionError):
  ''' Bad magic or a truncated mandatory header.
      Fatal for the whole tag or box tree.
  '''

class SizeViolation(DissectionError):
  ''' A declared size which does not fit its enclosing region.
      Invalidates the offending unit only.
  '''

class BoundsError(SizeViolation):
  ''' A bounded read which would pass the end of its region.
  '''

class EncodingViolation(DissectionError):
  ''' A malformed encoding: a synchsafe byte with its high bit set,
      an unknown text encoding byte, an impossible integer width.
      The value degrades to a best effort interpretation.
  '''

class DepthExceeded(DissectionError):
  ''' Box nesting deeper than the permitted maximum.
  '''

class UnknownFormatError(DissectionError):
  ''' The data are neither an ID3v2 tag nor an ISOBMFF box stream.
  '''

# not an error: recognised structure with an unrecognised type code
UNKNOWN_TYPE = 'UnknownType'

class Diagnostic(namedtuple('Diagnostic',
                            'offset path severity category message')):
  ''' A single finding from a dissection.

      Attributes:
      * `offset`: the absolute byte offset of the problem, or `None`
      * `path`: the structural path, eg `'moov.udta.meta'` or `'CHAP/TIT2'`
      * `severity`: a `Severity`
      * `category`: the error taxonomy name, eg `'SizeViolation'`
      * `message`: a human readable description
  '''

  def __str__(self):
    offset_s = '-' if self.offset is None else f'{self.offset:#010x}'
    path_s = f' {self.path}' if self.path else ''
    return f'{offset_s}{path_s}: {self.severity}: {self.category}: {self.message}'

class Diagnostics:
  ''' An append only collection of `Diagnostic`s.

      Each diagnostic is also logged via `cs.logutils`,
      fatal diagnostics as warnings and the rest at debug level.
  '''

  def __init__(self):
    self._diagnostics = []

  def __iter__(self):
    return iter(self._diagnostics)

  def __len__(self):
    return len(self._diagnostics)

  def __getitem__(self, index):
    return self._diagnostics[index]

  def add(self, severity, category, message, *, offset=None, path=''):
    ''' Record a new `Diagnostic`, return it.
    '''
    diag = Diagnostic(
        offset=offset,
        path=path,
        severity=Severity(severity),
        category=category,
        message=message,
    )
    self._diagnostics.append(diag)
    with Pfx("%s", path or 'diagnostic'):
      if diag.severity >= Severity.FATAL:
        warning("%s", diag)
      else:
        debug("%s", diag)
    return diag

  def info(self, category, message, **kw):
    ''' Record an informational diagnostic.
    '''
    return self.add(Severity.INFO, category, message, **kw)

  def warning(self, category, message, **kw):
    ''' Record a warning diagnostic.
    '''
    return self.add(Severity.WARNING, category, message, **kw)

  def error(self, category, message, **kw):
    ''' Record an error diagnostic.
    '''
    return self.add(Severity.ERROR, category, message, **kw)

  def fatal(self, category, message, **kw):
    ''' Record a fatal diagnostic.
    '''
    return self.add(Severity.FATAL, category, message, **kw)

  def from_exception(self, e, severity, *, offset=None, path=''):
    ''' Record a diagnostic from the exception `e`.
        `DissectionError`s supply their own category,
        and their own offset if `offset` is not supplied;
        other exceptions (typically `EOFError` from a short read)
        are recorded as `SizeViolation`s.
    '''
    if isinstance(e, DissectionError):
      category = e.category()
      if offset is None:
        offset = e.offset
    else:
      category = SizeViolation.category()
    return self.add(severity, category, str(e), offset=offset, path=path)

  @property
  def worst(self):
    ''' The most severe `Severity` recorded, or `None` if there are none.
    '''
    if not self._diagnostics:
      return None
    return max(diag.severity for diag in self._diagnostics)

  def by_category(self, category):
    ''' Return a list of the diagnostics in `category`.
    '''
    return [diag for diag in self._diagnostics if diag.category == category]

  def as_tuple(self):
    ''' A snapshot of the diagnostics as a `tuple`.
    '''
    return tuple(self._diagnostics)
