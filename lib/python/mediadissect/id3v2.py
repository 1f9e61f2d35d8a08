#!/usr/bin/env python3
#
# ID3v2.3 and ID3v2.4 tag dissection.
#

''' Dissection of ID3v2 tags, versions 2.3 and 2.4,
    including the frames of the ID3v2 Chapter Frame Addendum.

    References:
    * [ID3v2.3.0](https://id3.org/id3v2.3.0)
    * [ID3v2.4.0 structure](https://id3.org/id3v2.4.0-structure)
    * [ID3v2.4.0 frames](https://id3.org/id3v2.4.0-frames)
    * [ID3v2 Chapter Frame Addendum](https://id3.org/id3v2-chapters-1.0)

    The main entry point is `dissect_id3v2(bfr,diagnostics)`
    which returns an immutable `Tag`.
    Malformed frames are recorded in the `Diagnostics`
    and never abort the remainder of the tag.
'''

from collections import namedtuple

from cs.binary import BinaryStruct
from cs.buffer import CornuCopyBuffer
from cs.logutils import debug
from cs.pfx import Pfx

from .diagnostics import (
    Diagnostics,
    DissectionError,
    EncodingViolation,
    Severity,
    SizeViolation,
    StructuralError,
    UNKNOWN_TYPE,
)
from .primitives import (
    SynchsafeInt,
    decode_synchsafe,
    read_uint_be,
    remove_unsynchronisation,
)
from .textenc import (
    TextEncoding,
    decode_strings,
    split_latin1,
    split_terminated,
)

# tag size sanity tiers, applied after decoding the declared size
TAG_SIZE_INFO = 10_000_000
TAG_SIZE_WARNING = 50_000_000
TAG_SIZE_LIMIT = 100_000_000

TAG_HEADER_SIZE = 10
FRAME_HEADER_SIZE = 10

# the "not used" value for the CHAP byte offsets
CHAP_OFFSET_UNUSED = 0xffffffff

# UFID identifiers may be at most this long
UFID_IDENTIFIER_MAX = 64

TagHeaderStruct = BinaryStruct(
    'TagHeaderStruct', '>3sBBB4s', 'magic major revision flags size_bs'
)

# mapping from frame ids to descriptions,
# from the ID3v2.3 and ID3v2.4 frame specifications
# and the Chapter Frame Addendum
FRAME_DESCRIPTIONS = {
    'TIT1': "Content group description",
    'TIT2': "Title/songname/content description",
    'TIT3': "Subtitle/Description refinement",
    'TALB': "Album/Movie/Show title",
    'TOAL': "Original album/movie/show title",
    'TRCK': "Track number/Position in set",
    'TPOS': "Part of a set",
    'TSST': "Set subtitle",
    'TSRC': "ISRC (international standard recording code)",
    'TPE1': "Lead performer(s)/Soloist(s)",
    'TPE2': "Band/orchestra/accompaniment",
    'TPE3': "Conductor/performer refinement",
    'TPE4': "Interpreted, remixed, or otherwise modified by",
    'TOPE': "Original artist(s)/performer(s)",
    'TEXT': "Lyricist/Text writer",
    'TOLY': "Original lyricist(s)/text writer(s)",
    'TCOM': "Composer",
    'TMCL': "Musician credits list",
    'TIPL': "Involved people list",
    'TENC': "Encoded by",
    'TBPM': "BPM (beats per minute)",
    'TLEN': "Length",
    'TKEY': "Initial key",
    'TLAN': "Language(s)",
    'TCON': "Content type",
    'TFLT': "File type",
    'TMED': "Media type",
    'TMOO': "Mood",
    'TCOP': "Copyright message",
    'TPRO': "Produced notice",
    'TPUB': "Publisher",
    'TOWN': "File owner/licensee",
    'TRSN': "Internet radio station name",
    'TRSO': "Internet radio station owner",
    'TOFN': "Original filename",
    'TDLY': "Playlist delay",
    'TDEN': "Encoding time",
    'TDOR': "Original release time",
    'TDRC': "Recording time",
    'TDRL': "Release time",
    'TDTG': "Tagging time",
    'TSSE': "Software/Hardware and settings used for encoding",
    'TSOA': "Album sort order",
    'TSOP': "Performer sort order",
    'TSOT': "Title sort order",
    'TXXX': "User defined text information frame",
    # ID3v2.3 only
    'TDAT': "Date",
    'TIME': "Time",
    'TORY': "Original release year",
    'TRDA': "Recording dates",
    'TSIZ': "Size",
    'TYER': "Year",
    'IPLS': "Involved people list",
    'RVAD': "Relative volume adjustment",
    'EQUA': "Equalisation",
    # ID3v2.4 only
    'RVA2': "Relative volume adjustment (2)",
    'EQU2': "Equalisation (2)",
    'SEEK': "Seek frame",
    'ASPI': "Audio seek point index",
    'SIGN': "Signature frame",
    # URL link frames
    'WCOM': "Commercial information",
    'WCOP': "Copyright/Legal information",
    'WOAF': "Official audio file webpage",
    'WOAR': "Official artist/performer webpage",
    'WOAS': "Official audio source webpage",
    'WORS': "Official internet radio station homepage",
    'WPAY': "Payment",
    'WPUB': "Publishers official webpage",
    'WXXX': "User defined URL link frame",
    # other frames
    'MCDI': "Music CD identifier",
    'ETCO': "Event timing codes",
    'MLLT': "MPEG location lookup table",
    'SYTC': "Synchronized tempo codes",
    'USLT': "Unsychronized lyric/text transcription",
    'SYLT': "Synchronized lyric/text",
    'COMM': "Comments",
    'RVRB': "Reverb",
    'PCNT': "Play counter",
    'POPM': "Popularimeter",
    'RBUF': "Recommended buffer size",
    'AENC': "Audio encryption",
    'LINK': "Linked information",
    'POSS': "Position synchronisation frame",
    'USER': "Terms of use",
    'OWNE': "Ownership frame",
    'COMR': "Commercial frame",
    'ENCR': "Encryption method registration",
    'GRID': "Group identification registration",
    'PRIV': "Private frame",
    'GEOB': "General encapsulated object",
    'UFID': "Unique file identifier",
    'APIC': "Attached picture",
    # Chapter Frame Addendum
    'CHAP': "Chapter frame",
    'CTOC': "Table of contents frame",
}

_COMMON_FRAME_IDS = frozenset(
    (
        'TALB TBPM TCOM TCON TCOP TDLY TENC TEXT TFLT TIT1 TIT2 TIT3 TKEY'
        ' TLAN TLEN TMED TOAL TOFN TOLY TOPE TOWN TPE1 TPE2 TPE3 TPE4 TPOS'
        ' TPUB TRCK TRSN TRSO TSRC TSSE TXXX'
        ' WCOM WCOP WOAF WOAR WOAS WORS WPAY WPUB WXXX'
        ' UFID MCDI ETCO MLLT SYTC USLT SYLT COMM RVRB PCNT POPM RBUF AENC'
        ' LINK POSS USER OWNE COMR ENCR GRID PRIV GEOB APIC'
        ' CHAP CTOC'
    ).split()
)

# the frame ids defined for each major version
VALID_FRAME_IDS = {
    3:
    _COMMON_FRAME_IDS
    | frozenset('TDAT TIME TORY TRDA TSIZ TYER IPLS RVAD EQUA'.split()),
    4:
    _COMMON_FRAME_IDS | frozenset(
        (
            'TDEN TDOR TDRC TDRL TDTG TIPL TMCL TMOO TPRO TSOA TSOP TSOT TSST'
            ' RVA2 EQU2 SEEK ASPI SIGN'
        ).split()
    ),
}

PICTURE_TYPES = {
    0x00: "Other",
    0x01: "32x32 pixels 'file icon' (PNG only)",
    0x02: "Other file icon",
    0x03: "Cover (front)",
    0x04: "Cover (back)",
    0x05: "Leaflet page",
    0x06: "Media (e.g. label side of CD)",
    0x07: "Lead artist/lead performer/soloist",
    0x08: "Artist/performer",
    0x09: "Conductor",
    0x0a: "Band/Orchestra",
    0x0b: "Composer",
    0x0c: "Lyricist/text writer",
    0x0d: "Recording Location",
    0x0e: "During recording",
    0x0f: "During performance",
    0x10: "Movie/video screen capture",
    0x11: "A bright coloured fish",
    0x12: "Illustration",
    0x13: "Band/artist logotype",
    0x14: "Publisher/Studio logotype",
}

def frame_description(frame_id):
  ''' Return the description of the frame `frame_id`.
  '''
  return FRAME_DESCRIPTIONS.get(frame_id, "Unknown frame type")

def is_frame_id(id_bs):
  ''' Test whether the 4 bytes `id_bs` form a well formed frame id:
      uppercase ASCII letters and digits only.
  '''
  return len(id_bs) == 4 and all(
      0x41 <= b <= 0x5a or 0x30 <= b <= 0x39 for b in id_bs
  )

##############################################################################
# frame content: a closed set of namedtuple classes

class TextContent(namedtuple('TextContent', 'encoding strings')):
  ''' A text information frame (`T***` other than `TXXX`).
  '''

  @property
  def value(self):
    ''' The first string, or `''` if there are none.
    '''
    return self.strings[0] if self.strings else ''

  def __str__(self):
    return ' / '.join(self.strings)

class UrlContent(namedtuple('UrlContent', 'url')):
  ''' A URL link frame (`W***` other than `WXXX`).
  '''

  def __str__(self):
    return self.url

class UserTextContent(namedtuple('UserTextContent',
                                 'encoding description values')):
  ''' A user defined text frame (`TXXX`).
  '''

  @property
  def value(self):
    ''' The first value, or `''` if there are none.
    '''
    return self.values[0] if self.values else ''

  def __str__(self):
    return f'{self.description}: {" / ".join(self.values)}'

class UserUrlContent(namedtuple('UserUrlContent', 'encoding description url')):
  ''' A user defined URL link frame (`WXXX`).
  '''

  def __str__(self):
    return f'{self.description}: {self.url}'

class CommentContent(namedtuple('CommentContent',
                                'encoding language description text')):
  ''' A comment (`COMM`) or unsynchronised lyrics (`USLT`) frame.
  '''

  def __str__(self):
    return f'[{self.language}] {self.description}: {self.text}'

class AttachedPictureContent(namedtuple(
    'AttachedPictureContent',
    'encoding mime_type picture_type description data',
)):
  ''' An attached picture frame (`APIC`).
  '''

  @property
  def picture_type_label(self):
    ''' A description of the picture type.
    '''
    return PICTURE_TYPES.get(self.picture_type, "Unknown")

  def __str__(self):
    return (
        f'{self.mime_type} {self.picture_type_label}'
        f' {self.description!r}: {len(self.data)} bytes'
    )

class UniqueFileIdContent(namedtuple('UniqueFileIdContent',
                                     'owner identifier')):
  ''' A unique file identifier frame (`UFID`).
  '''

  def __str__(self):
    return f'{self.owner}: {self.identifier.hex()}'

class ChapterContent(namedtuple(
    'ChapterContent',
    'element_id start_ms end_ms start_offset end_offset frames',
)):
  ''' A chapter frame (`CHAP`).

      The `start_offset` and `end_offset` are `None`
      if the frame has the "not used" value `0xffffffff`.
      The embedded `frames` have offsets relative to the start
      of the chapter frame payload.
  '''

  @property
  def duration_ms(self):
    ''' The chapter duration in milliseconds.
    '''
    return max(0, self.end_ms - self.start_ms)

  @property
  def has_byte_offsets(self):
    ''' Whether the chapter specifies byte offsets.
    '''
    return self.start_offset is not None and self.end_offset is not None

  def __str__(self):
    return (
        f'{self.element_id}: {format_ms(self.start_ms)}'
        f' - {format_ms(self.end_ms)}, {len(self.frames)} subframes'
    )

class TableOfContentsContent(namedtuple(
    'TableOfContentsContent',
    'element_id top_level ordered child_ids frames',
)):
  ''' A table of contents frame (`CTOC`).
  '''

  def __str__(self):
    flags = []
    if self.top_level:
      flags.append('top-level')
    if self.ordered:
      flags.append('ordered')
    return (
        f'{self.element_id} [{",".join(flags)}]:'
        f' {" ".join(self.child_ids)}, {len(self.frames)} subframes'
    )

class BinaryContent(namedtuple('BinaryContent', 'data')):
  ''' The fallback content: the raw frame payload.
  '''

  def __str__(self):
    return f'{len(self.data)} bytes'

def format_ms(ms):
  ''' Format a millisecond count as `hh:mm:ss.mmm`.
  '''
  seconds, ms = divmod(ms, 1000)
  minutes, seconds = divmod(seconds, 60)
  hours, minutes = divmod(minutes, 60)
  return f'{hours:02d}:{minutes:02d}:{seconds:02d}.{ms:03d}'

##############################################################################
# tag structure

class TagHeader(namedtuple('TagHeader',
                           'major revision flags size size_fault')):
  ''' The 10 byte ID3v2 tag header.
      `size` is the declared size of the tag excluding this header.
  '''

  @property
  def version(self):
    ''' The `(major,revision)` version tuple.
    '''
    return self.major, self.revision

  @property
  def unsynchronisation(self):
    ''' Whether the tag is unsynchronised.
    '''
    return bool(self.flags & 0x80)

  @property
  def extended_header(self):
    ''' Whether an extended header follows the tag header.
    '''
    return bool(self.flags & 0x40)

  @property
  def experimental(self):
    ''' Whether the tag is flagged as experimental.
    '''
    return bool(self.flags & 0x20)

  @property
  def footer_present(self):
    ''' Whether the tag has a footer, ID3v2.4 only.
    '''
    return self.major >= 4 and bool(self.flags & 0x10)

  def flag_names(self):
    ''' Return a list of the names of the set flags.
    '''
    return [
        name for name in (
            'unsynchronisation',
            'extended_header',
            'experimental',
            'footer_present',
        ) if getattr(self, name)
    ]

class ExtendedHeader(namedtuple('ExtendedHeader',
                                'size flags data padding_size crc')):
  ''' An ID3v2 extended header.
      `size` is the number of bytes it occupies including its size field.
      `padding_size` and `crc` are only present in ID3v2.3 headers.
  '''

class Frame(namedtuple(
    'Frame',
    'frame_id size flags offset major data content valid',
)):
  ''' An ID3v2 frame.

      Attributes:
      * `frame_id`: the 4 character frame id
      * `size`: the declared payload size
      * `flags`: the 16 bit flags field
      * `offset`: the offset of the frame header, absolute for top
        level frames and relative to the parent payload for frames
        embedded in `CHAP` and `CTOC` frames
      * `major`: the tag major version, which governs the flag layout
      * `data`: the raw payload bytes
      * `content`: the decoded content, or `None` for an invalid frame
      * `valid`: false if the declared size overran the tag
  '''

  # (v2.3 mask, v2.4 mask) for each flag
  FLAG_MASKS = {
      'tag_alter_preservation': (0x8000, 0x4000),
      'file_alter_preservation': (0x4000, 0x2000),
      'read_only': (0x2000, 0x1000),
      'grouping': (0x0020, 0x0040),
      'compression': (0x0080, 0x0008),
      'encryption': (0x0040, 0x0004),
      'unsynchronisation': (0, 0x0002),
      'data_length_indicator': (0, 0x0001),
  }

  @property
  def description(self):
    ''' The description of this frame's id.
    '''
    return frame_description(self.frame_id)

  def flag(self, flag_name):
    ''' Test the named flag, using the layout for this frame's version.
    '''
    v3mask, v4mask = self.FLAG_MASKS[flag_name]
    return bool(self.flags & (v4mask if self.major >= 4 else v3mask))

  def flag_names(self):
    ''' Return a list of the names of the set flags.
    '''
    return [flag_name for flag_name in self.FLAG_MASKS if self.flag(flag_name)]

  @property
  def tag_alter_preservation(self):
    ''' Frame should be discarded if the tag is altered.
    '''
    return self.flag('tag_alter_preservation')

  @property
  def file_alter_preservation(self):
    ''' Frame should be discarded if the file is altered.
    '''
    return self.flag('file_alter_preservation')

  @property
  def read_only(self):
    ''' Frame is read only.
    '''
    return self.flag('read_only')

  @property
  def grouping(self):
    ''' Frame has a group identifier byte.
    '''
    return self.flag('grouping')

  @property
  def compression(self):
    ''' Frame payload is zlib compressed.
    '''
    return self.flag('compression')

  @property
  def encryption(self):
    ''' Frame payload is encrypted.
    '''
    return self.flag('encryption')

  @property
  def unsynchronisation(self):
    ''' Frame payload is unsynchronised, ID3v2.4 only.
    '''
    return self.flag('unsynchronisation')

  @property
  def data_length_indicator(self):
    ''' Frame payload leads with a synchsafe data length, ID3v2.4 only.
    '''
    return self.flag('data_length_indicator')

class Tag(namedtuple(
    'Tag',
    'offset header extended_header frames oversized',
)):
  ''' An ID3v2 tag.

      Attributes:
      * `offset`: the absolute offset of the tag header
      * `header`: the `TagHeader`
      * `extended_header`: an `ExtendedHeader` or `None`
      * `frames`: a tuple of the top level `Frame`s in file order
      * `oversized`: true if the tag was rejected for its declared size
  '''

  @property
  def version(self):
    ''' The `(major,revision)` version tuple.
    '''
    return self.header.version

  @property
  def size(self):
    ''' The declared tag size.
    '''
    return self.header.size

  def walk(self):
    ''' Generator yielding `(depth,frame)` for every frame in the tag
        including those embedded in chapter and table of contents frames.
    '''
    for frame in self.frames:
      yield 0, frame
      for subframe in getattr(frame.content, 'frames', ()):
        yield 1, subframe

##############################################################################
# parsing

def _require(data, length, what):
  ''' Raise `SizeViolation` if `data` is shorter than `length`.
  '''
  if len(data) < length:
    raise SizeViolation(
        f'{what}: need at least {length} bytes, only {len(data)} present'
    )

def _encoding_for(data, major, diagnostics, path, offset):
  ''' Decode the leading encoding byte of `data`,
      warning if it is not defined for this tag version.
      An unknown encoding byte is warned about and ISO-8859-1 is used.
  '''
  _require(data, 1, "encoding byte")
  try:
    encoding = TextEncoding.from_byte(data[0])
  except EncodingViolation as e:
    diagnostics.from_exception(e, Severity.WARNING, offset=offset, path=path)
    return TextEncoding.ISO_8859_1
  if not encoding.valid_for_version(major):
    diagnostics.warning(
        EncodingViolation.category(),
        f'text encoding {encoding.label} is not defined for ID3v2.{major}',
        offset=offset,
        path=path,
    )
  return encoding

def _split_element_id(data, what):
  ''' Split a NUL terminated ISO-8859-1 element id from `data`.
  '''
  if b'\0' not in data:
    raise SizeViolation(f'{what} element id is not NUL terminated')
  return split_latin1(data)

def decode_frame_content(
    frame_id,
    data,
    *,
    major,
    diagnostics,
    path,
    offset,
    embedded=False,
):
  ''' Decode the payload `data` of the frame `frame_id`.
      Return a content instance.

      Failures of recognised frames raise `DissectionError`s
      which the caller converts into diagnostics and `BinaryContent`.
      `embedded` is true for frames inside a `CHAP` or `CTOC` frame,
      whose own `CHAP` and `CTOC` frames are not expanded.
  '''
  if frame_id == 'TXXX':
    encoding = _encoding_for(data, major, diagnostics, path, offset)
    description, tail = split_terminated(encoding, data[1:])
    return UserTextContent(
        encoding, description, tuple(decode_strings(encoding, tail))
    )
  if frame_id.startswith('T'):
    encoding = _encoding_for(data, major, diagnostics, path, offset)
    return TextContent(encoding, tuple(decode_strings(encoding, data[1:])))
  if frame_id == 'WXXX':
    encoding = _encoding_for(data, major, diagnostics, path, offset)
    description, tail = split_terminated(encoding, data[1:])
    url, _ = split_latin1(tail)
    return UserUrlContent(encoding, description, url)
  if frame_id.startswith('W'):
    url, _ = split_latin1(data)
    return UrlContent(url)
  if frame_id in ('COMM', 'USLT'):
    encoding = _encoding_for(data, major, diagnostics, path, offset)
    _require(data, 4, frame_id)
    language = data[1:4].decode('iso8859-1')
    description, tail = split_terminated(encoding, data[4:])
    text, _ = split_terminated(encoding, tail)
    return CommentContent(encoding, language, description, text)
  if frame_id == 'APIC':
    encoding = _encoding_for(data, major, diagnostics, path, offset)
    mime_type, tail = split_latin1(data[1:])
    _require(tail, 1, "APIC picture type")
    picture_type = tail[0]
    description, picture_data = split_terminated(encoding, tail[1:])
    return AttachedPictureContent(
        encoding, mime_type, picture_type, description, bytes(picture_data)
    )
  if frame_id == 'UFID':
    owner, identifier = split_latin1(data)
    if len(identifier) > UFID_IDENTIFIER_MAX:
      diagnostics.warning(
          SizeViolation.category(),
          f'UFID identifier is {len(identifier)} bytes,'
          f' more than {UFID_IDENTIFIER_MAX}',
          offset=offset,
          path=path,
      )
    return UniqueFileIdContent(owner, bytes(identifier))
  if frame_id in ('CHAP', 'CTOC'):
    if embedded:
      diagnostics.info(
          UNKNOWN_TYPE,
          f'{frame_id} inside a chapter frame is not expanded',
          offset=offset,
          path=path,
      )
      return BinaryContent(bytes(data))
    if frame_id == 'CHAP':
      return decode_chapter(
          data,
          major=major,
          diagnostics=diagnostics,
          path=path,
          offset=offset,
      )
    return decode_table_of_contents(
        data, major=major, diagnostics=diagnostics, path=path, offset=offset
    )
  return BinaryContent(bytes(data))

def decode_chapter(data, *, major, diagnostics, path, offset):
  ''' Decode a `CHAP` payload.
      `offset` is the absolute offset of the payload, for diagnostics.
  '''
  element_id, tail = _split_element_id(data, 'CHAP')
  pos = len(data) - len(tail)
  start_ms = read_uint_be(data, pos, 4)
  end_ms = read_uint_be(data, pos + 4, 4)
  start_offset = read_uint_be(data, pos + 8, 4)
  end_offset = read_uint_be(data, pos + 12, 4)
  if end_ms < start_ms:
    diagnostics.warning(
        StructuralError.category(),
        f'chapter {element_id!r} ends ({end_ms}ms) before it starts ({start_ms}ms)',
        offset=offset,
        path=path,
    )
  frames = parse_frames(
      data,
      pos + 16,
      major=major,
      diagnostics=diagnostics,
      path=path,
      frame_base=0,
      diag_base=offset,
      embedded=True,
  )
  return ChapterContent(
      element_id=element_id,
      start_ms=start_ms,
      end_ms=end_ms,
      start_offset=None if start_offset == CHAP_OFFSET_UNUSED else start_offset,
      end_offset=None if end_offset == CHAP_OFFSET_UNUSED else end_offset,
      frames=frames,
  )

def decode_table_of_contents(data, *, major, diagnostics, path, offset):
  ''' Decode a `CTOC` payload.
      `offset` is the absolute offset of the payload, for diagnostics.

      The flags byte is `%000000ab`: `a` (0x02) marks the top level
      table of contents and `b` (0x01) marks ordered entries.
  '''
  element_id, tail = _split_element_id(data, 'CTOC')
  _require(tail, 2, "CTOC flags and entry count")
  flags = tail[0]
  entry_count = tail[1]
  tail = tail[2:]
  child_ids = []
  for n in range(entry_count):
    with Pfx("child %d", n):
      child_id, tail = _split_element_id(tail, f'CTOC child {n}')
      child_ids.append(child_id)
  pos = len(data) - len(tail)
  frames = parse_frames(
      data,
      pos,
      major=major,
      diagnostics=diagnostics,
      path=path,
      frame_base=0,
      diag_base=offset,
      embedded=True,
  )
  return TableOfContentsContent(
      element_id=element_id,
      top_level=bool(flags & 0x02),
      ordered=bool(flags & 0x01),
      child_ids=tuple(child_ids),
      frames=frames,
  )

def _frame_payload(frame, payload_offset, diagnostics, path, unsynchronised):
  ''' Prepare the payload of `frame` for content decoding
      according to its format flags.
      Return the payload bytes, or `None` if the payload cannot be decoded.
  '''
  if frame.compression or frame.encryption:
    diagnostics.info(
        UNKNOWN_TYPE,
        '%s frame not decoded' %
        ('compressed' if frame.compression else 'encrypted',),
        offset=payload_offset,
        path=path,
    )
    return None
  data = frame.data
  if frame.grouping:
    data = data[1:]
  if frame.major >= 4:
    data_length = None
    if frame.data_length_indicator:
      _require(data, 4, "data length indicator")
      data_length = SynchsafeInt.value_from_bytes(bytes(data[:4]))
      data = data[4:]
    if frame.unsynchronisation or unsynchronised:
      data = remove_unsynchronisation(data)
    if data_length is not None and data_length != len(data):
      diagnostics.info(
          SizeViolation.category(),
          f'data length indicator {data_length}'
          f' does not match the {len(data)} byte payload',
          offset=payload_offset,
          path=path,
      )
  return data

def parse_frames(
    body,
    start,
    *,
    major,
    diagnostics,
    path='',
    frame_base=0,
    diag_base=0,
    embedded=False,
    unsynchronised=False,
):
  ''' Parse the frames in `body` commencing at offset `start`.
      Return a tuple of `Frame`s.

      Parameters:
      * `body`: the bytes containing the frames
      * `start`: the offset of the first frame header in `body`
      * `major`: the tag major version, 3 or 4
      * `diagnostics`: the `Diagnostics` collecting problems
      * `path`: the structural path of the enclosing unit
      * `frame_base`: added to positions within `body` to compute `Frame.offset`
      * `diag_base`: added to positions within `body` to compute diagnostic offsets
      * `embedded`: true when parsing the subframes of a `CHAP` or `CTOC`
      * `unsynchronised`: true if the tag header marks every frame
        as unsynchronised, ID3v2.4 only

      The loop stops at padding (an all zero frame id),
      at a malformed frame id,
      when fewer than 10 bytes remain,
      or at a frame whose size overruns `body`;
      that last frame is kept, marked invalid.
  '''
  frames = []
  pos = start
  while len(body) - pos >= FRAME_HEADER_SIZE:
    id_bs = bytes(body[pos:pos + 4])
    if id_bs == b'\0\0\0\0':
      debug("padding at offset %d", pos)
      break
    if not is_frame_id(id_bs):
      diagnostics.warning(
          StructuralError.category(),
          f'invalid frame id {id_bs!r}, stopping frame parse',
          offset=diag_base + pos,
          path=path,
      )
      break
    frame_id = id_bs.decode('ascii')
    frame_path = f'{path}/{frame_id}' if path else frame_id
    with Pfx("%s@%d", frame_id, frame_base + pos):
      size_bs = bytes(body[pos + 4:pos + 8])
      if major >= 4:
        size, size_fault = decode_synchsafe(size_bs)
        if size_fault:
          diagnostics.warning(
              EncodingViolation.category(),
              f'frame size bytes {size_bs.hex()} are not synchsafe,'
              f' using big endian value {size}',
              offset=diag_base + pos + 4,
              path=frame_path,
          )
      else:
        size = read_uint_be(body, pos + 4, 4)
      flags = read_uint_be(body, pos + 8, 2)
      remaining = len(body) - pos - FRAME_HEADER_SIZE
      if size > remaining:
        diagnostics.error(
            SizeViolation.category(),
            f'invalid frame size {size}, only {remaining} bytes remain,'
            ' stopping frame parse',
            offset=diag_base + pos,
            path=frame_path,
        )
        frames.append(
            Frame(
                frame_id=frame_id,
                size=size,
                flags=flags,
                offset=frame_base + pos,
                major=major,
                data=b'',
                content=None,
                valid=False,
            )
        )
        break
      if frame_id not in VALID_FRAME_IDS.get(major, ()):
        diagnostics.warning(
            UNKNOWN_TYPE,
            f'{frame_id} is not a defined ID3v2.{major} frame id',
            offset=diag_base + pos,
            path=frame_path,
        )
      payload_offset = pos + FRAME_HEADER_SIZE
      frame = Frame(
          frame_id=frame_id,
          size=size,
          flags=flags,
          offset=frame_base + pos,
          major=major,
          data=bytes(body[payload_offset:payload_offset + size]),
          content=None,
          valid=True,
      )
      content = None
      try:
        if size == 0:
          raise SizeViolation("empty frame")
        data = _frame_payload(
            frame,
            diag_base + payload_offset,
            diagnostics,
            frame_path,
            unsynchronised,
        )
        if data is not None:
          content = decode_frame_content(
              frame_id,
              data,
              major=major,
              diagnostics=diagnostics,
              path=frame_path,
              offset=diag_base + payload_offset,
              embedded=embedded,
          )
      except DissectionError as e:
        diagnostics.from_exception(
            e,
            Severity.WARNING,
            offset=diag_base + payload_offset,
            path=frame_path,
        )
      if content is None:
        content = BinaryContent(frame.data)
      frames.append(frame._replace(content=content))
      pos = payload_offset + size
  return tuple(frames)

def _parse_extended_header(body, major):
  ''' Parse the extended header at the start of `body`.
      Return the `ExtendedHeader`.
  '''
  _require(body, 6, "extended header")
  if major >= 4:
    size, fault = decode_synchsafe(bytes(body[:4]))
    if fault:
      raise EncodingViolation(
          f'extended header size bytes {bytes(body[:4]).hex()} are not synchsafe'
      )
    if size < 6:
      raise SizeViolation(f'extended header size {size} is less than 6')
    _require(body, size, "extended header")
    nflag_bytes = body[4]
    flags = int.from_bytes(body[5:5 + nflag_bytes], 'big')
    return ExtendedHeader(
        size=size,
        flags=flags,
        data=bytes(body[5 + nflag_bytes:size]),
        padding_size=None,
        crc=None,
    )
  # v2.3: the size excludes the size field itself, 6 or 10 with a CRC
  declared_size = read_uint_be(body, 0, 4)
  if declared_size not in (6, 10):
    raise SizeViolation(
        f'extended header size {declared_size} is neither 6 nor 10'
    )
  size = declared_size + 4
  _require(body, size, "extended header")
  flags = read_uint_be(body, 4, 2)
  padding_size = read_uint_be(body, 6, 4)
  crc = read_uint_be(body, 10, 4) if flags & 0x8000 else None
  return ExtendedHeader(
      size=size,
      flags=flags,
      data=bytes(body[6:size]),
      padding_size=padding_size,
      crc=crc,
  )

def parse_tag_header(bfr: CornuCopyBuffer, diagnostics: Diagnostics):
  ''' Parse the 10 byte tag header from `bfr`, return a `TagHeader`.
      Raise `StructuralError` for a short header or bad magic.
  '''
  offset = bfr.offset
  try:
    hdr = TagHeaderStruct.parse(bfr)
  except EOFError as e:
    raise StructuralError(
        f'truncated ID3v2 tag header: {e}', offset=offset
    ) from e
  if hdr.magic != b'ID3':
    raise StructuralError(
        f'bad ID3v2 magic {hdr.magic!r}, expected {b"ID3"!r}', offset=offset
    )
  size, size_fault = decode_synchsafe(hdr.size_bs)
  if size_fault:
    diagnostics.warning(
        EncodingViolation.category(),
        f'tag size bytes {hdr.size_bs.hex()} are not synchsafe,'
        f' using big endian value {size}',
        offset=offset + 6,
        path='ID3v2',
    )
  return TagHeader(
      major=hdr.major,
      revision=hdr.revision,
      flags=hdr.flags,
      size=size,
      size_fault=size_fault,
  )

def _check_tag_size(size, diagnostics, offset, path):
  ''' Apply the size sanity tiers to the declared tag `size`.
      Return false if the tag is to be rejected.
  '''
  if size > TAG_SIZE_LIMIT:
    diagnostics.fatal(
        SizeViolation.category(),
        f'tag size {size} exceeds the {TAG_SIZE_LIMIT} byte limit,'
        ' tag rejected',
        offset=offset,
        path=path,
    )
    return False
  if size > TAG_SIZE_WARNING:
    diagnostics.warning(
        SizeViolation.category(),
        f'very large tag size {size} (> {TAG_SIZE_WARNING}),'
        ' likely a podcast with chapter images',
        offset=offset,
        path=path,
    )
  elif size > TAG_SIZE_INFO:
    diagnostics.info(
        SizeViolation.category(),
        f'large tag size {size} (> {TAG_SIZE_INFO}),'
        ' possibly a podcast with embedded chapter content',
        offset=offset,
        path=path,
    )
  return True

def dissect_id3v2(
    bfr: CornuCopyBuffer,
    diagnostics: Diagnostics,
    *,
    header_only=False,
) -> Tag:
  ''' Dissect the ID3v2 tag at the current position of `bfr`.
      Return a `Tag`.

      Raises `StructuralError` if there is no complete tag header.
      All other problems are recorded in `diagnostics`.
      If `header_only` is true the frames are not parsed.
  '''
  offset = bfr.offset
  header = parse_tag_header(bfr, diagnostics)
  major = header.major
  path = f'ID3v2.{major}'
  with Pfx(path):
    tag = Tag(
        offset=offset,
        header=header,
        extended_header=None,
        frames=(),
        oversized=False,
    )
    if major not in (3, 4):
      diagnostics.warning(
          StructuralError.category(),
          f'unknown tag version 2.{major}.{header.revision}, frames not decoded',
          offset=offset + 3,
          path=path,
      )
      return tag
    if not _check_tag_size(header.size, diagnostics, offset + 6, path):
      return tag._replace(oversized=True)
    if header_only:
      return tag
    body_offset = bfr.offset
    body = bfr.take(header.size, short_ok=True)
    if len(body) < header.size:
      diagnostics.error(
          SizeViolation.category(),
          f'tag size {header.size} exceeds the {len(body)} bytes present,'
          ' tag truncated',
          offset=body_offset,
          path=path,
      )
    unsynchronised = header.unsynchronisation
    if unsynchronised and major < 4:
      # v2.3 unsynchronisation applies to the whole tag body
      body = remove_unsynchronisation(body)
      unsynchronised = False
    start = 0
    if header.extended_header:
      try:
        extended_header = _parse_extended_header(body, major)
      except DissectionError as e:
        diagnostics.from_exception(
            e, Severity.ERROR, offset=body_offset, path=f'{path}/extended header'
        )
        return tag
      tag = tag._replace(extended_header=extended_header)
      start = extended_header.size
    frames = parse_frames(
        body,
        start,
        major=major,
        diagnostics=diagnostics,
        path=path,
        frame_base=body_offset,
        diag_base=body_offset,
        unsynchronised=unsynchronised,
    )
    return tag._replace(frames=frames)
