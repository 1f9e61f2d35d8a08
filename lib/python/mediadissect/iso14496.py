#!/usr/bin/env python3
#
# ISO14496 box tree dissection.
#

'''
Dissection of ISO14496 files - the ISO Base Media File Format,
the basis for several things including MP4, MOV, M4A and 3GP.

ISO make the standard available here:
* [available standards main page](http://standards.iso.org/ittf/PubliclyAvailableStandards/index.html)
* [zip file download](http://standards.iso.org/ittf/PubliclyAvailableStandards/c068960_ISO_IEC_14496-12_2015.zip)

The main entry point is `dissect_isobmff(bfr,end_offset,diagnostics)`
which walks the boxes in a region of a `CornuCopyBuffer`
and returns an immutable `BoxTree`.
Large leaf boxes such as `mdat` are skipped rather than read.
'''

from collections import namedtuple

from icontract import require
from typeguard import typechecked

from cs.binary import BinaryStruct, UInt64BE
from cs.buffer import CornuCopyBuffer
from cs.logutils import debug
from cs.pfx import Pfx

from .diagnostics import (
    DepthExceeded,
    Diagnostics,
    DissectionError,
    Severity,
    SizeViolation,
    UNKNOWN_TYPE,
)
from .itunes import decode_data_box, decode_mean_name
from .primitives import take_bounded

MAX_BOX_DEPTH = 20

# leaves with payloads larger than this are skipped, not read
BULK_LEAF_THRESHOLD = 1024 * 1024

BoxHeaderStruct = BinaryStruct('BoxHeaderStruct', '>L4s', 'size32 type_bs')
FullBoxHeader = BinaryStruct('FullBoxHeader', '>B3s', 'version flags_bs')
FTYPHeader = BinaryStruct('FTYPHeader', '>4sL', 'major_brand minor_version')
MVHDTimes32 = BinaryStruct(
    'MVHDTimes32', '>LLLL',
    'creation_time modification_time timescale duration'
)
MVHDTimes64 = BinaryStruct(
    'MVHDTimes64', '>QQLQ',
    'creation_time modification_time timescale duration'
)
MVHDRateVolume = BinaryStruct(
    'MVHDRateVolume', '>lh', 'rate_fixed volume_fixed'
)
TKHDTimes32 = BinaryStruct(
    'TKHDTimes32', '>LLLLL',
    'creation_time modification_time track_id reserved duration'
)
TKHDTimes64 = BinaryStruct(
    'TKHDTimes64', '>QQLLQ',
    'creation_time modification_time track_id reserved duration'
)
TKHDTail = BinaryStruct(
    'TKHDTail',
    '>8shhhH36sLL',
    'reserved1 layer alternate_group volume_fixed reserved2 matrix width_fixed height_fixed',
)
MDHDLanguage = BinaryStruct(
    'MDHDLanguage', '>HH', 'language_short pre_defined'
)
HDLRHeader = BinaryStruct(
    'HDLRHeader', '>L4s12s', 'pre_defined handler_type_bs reserved'
)

# structural container boxes, whose payload is a sequence of boxes
CONTAINER_BOX_TYPES = frozenset(
    (
        'moov', 'trak', 'edts', 'mdia', 'minf', 'dinf', 'stbl', 'mvex',
        'moof', 'traf', 'mfra', 'meta', 'ipro', 'udta', 'tref', 'ilst',
        'sinf', 'schi', 'dref'
    )
)

# full boxes among the containers: the bytes to skip before the first child
CONTAINER_PREAMBLE_SIZES = {
    'meta': 4,  # version and flags
    'dref': 8,  # version and flags, entry count
}

# iTunes metadata items, themselves containers of `data` boxes;
# any type commencing with the copyright sign is also an item
ITUNES_ITEM_TYPES = frozenset(
    (
        'trkn', 'disk', 'tmpo', 'covr', 'aART', '----', 'gnre', 'hdvd',
        'pgap', 'pcst', 'cpil', 'rtng', 'stik', 'tven', 'tves', 'tvnn',
        'tvsh', 'tvsn', 'apID', 'akID', 'atID', 'cnID', 'geID', 'plID',
        'sfID', 'soaa', 'soal', 'soar', 'soco', 'sonm', 'sosn', 'xid ',
        'keyw', 'catg', 'purl', 'egid', 'desc', 'ldes', 'sdes'
    )
)

# low level boxes omitted from presentation unless verbose
TECHNICAL_BOX_TYPES = frozenset(
    ('mdat', 'free', 'skip', 'stts', 'stsc', 'stsz', 'stco', 'co64')
)

# brands recognised in a leading ftyp box
FTYP_BRANDS = frozenset(
    (
        'isom', 'iso2', 'iso3', 'iso4', 'iso5', 'iso6', 'mp41', 'mp42',
        'mp71', 'M4A ', 'M4V ', 'M4P ', 'M4B ', 'qt  ', 'mqt ', '3gp4',
        '3gp5', '3gp6', '3gp7', '3gp8', '3gp9', '3g2a', '3g2b', '3g2c',
        'mmp4', 'avc1', 'MSNV', 'dash', 'msdh', 'msix'
    )
)

BOX_DESCRIPTIONS = {
    # file level
    'ftyp': "File Type and Compatibility",
    'moov': "Movie Metadata Container",
    'mdat': "Media Data",
    'free': "Free Space",
    'skip': "Free Space",
    'moof': "Movie Fragment",
    'mfra': "Movie Fragment Random Access",
    'meta': "Metadata Container",
    'pdin': "Progressive Download Information",
    'styp': "Segment Type",
    'sidx': "Segment Index",
    # movie
    'mvhd': "Movie Header",
    'trak': "Track Container",
    'mvex': "Movie Extends",
    'udta': "User Data",
    'iods': "Initial Object Descriptor",
    # track
    'tkhd': "Track Header",
    'tref': "Track Reference",
    'edts': "Edit List Container",
    'mdia': "Media Container",
    # track references
    'chap': "Chapter Track Reference",
    'tmcd': "Timecode Track Reference",
    'sync': "Sync Track Reference",
    'scpt': "Script Track Reference",
    'ssrc': "Non-Primary Source",
    'cdsc': "Content Description Track Reference",
    # edits
    'elst': "Edit List",
    # media
    'mdhd': "Media Header",
    'hdlr': "Handler Reference",
    'minf': "Media Information",
    # media information
    'vmhd': "Video Media Header",
    'smhd': "Sound Media Header",
    'hmhd': "Hint Media Header",
    'nmhd': "Null Media Header",
    'dinf': "Data Information",
    'stbl': "Sample Table",
    # data information
    'dref': "Data Reference",
    'url ': "Data Entry URL",
    'urn ': "Data Entry URN",
    # sample table
    'stsd': "Sample Description",
    'stts': "Time-to-Sample",
    'ctts': "Composition Time-to-Sample",
    'stsc': "Sample-to-Chunk",
    'stsz': "Sample Sizes",
    'stz2': "Compact Sample Sizes",
    'stco': "Chunk Offset (32-bit)",
    'co64': "Chunk Offset (64-bit)",
    'stss': "Sync Sample Table",
    'stsh': "Shadow Sync Sample",
    'padb': "Padding Bits",
    'stdp': "Sample Degradation Priority",
    'sdtp': "Sample Dependency",
    'sbgp': "Sample-to-Group",
    'sgpd': "Sample Group Description",
    'subs': "Sub-Sample Information",
    # movie extends
    'mehd': "Movie Extends Header",
    'trex': "Track Extends Defaults",
    'leva': "Level Assignment",
    # movie fragments
    'mfhd': "Movie Fragment Header",
    'traf': "Track Fragment",
    'tfhd': "Track Fragment Header",
    'trun': "Track Fragment Run",
    'tfdt': "Track Fragment Decode Time",
    'tfra': "Track Fragment Random Access",
    'mfro': "Movie Fragment Random Access Offset",
    # metadata
    'iloc': "Item Location",
    'ipro': "Item Protection",
    'iinf': "Item Information",
    'xml ': "XML Metadata",
    'bxml': "Binary XML Metadata",
    'pitm': "Primary Item",
    'idat': "Item Data",
    'iref': "Item Reference",
    # user data and iTunes metadata
    'cprt': "Copyright",
    'name': "Name",
    '©nam': "Name (iTunes)",
    '©ART': "Artist (iTunes)",
    '©alb': "Album (iTunes)",
    '©day': "Year (iTunes)",
    '©cmt': "Comment (iTunes)",
    '©gen': "Genre (iTunes)",
    '©too': "Encoding Tool (iTunes)",
    '©wrt': "Composer (iTunes)",
    '©grp': "Grouping (iTunes)",
    '©lyr': "Lyrics (iTunes)",
    'trkn': "Track Number (iTunes)",
    'disk': "Disk Number (iTunes)",
    'tmpo': "Tempo (iTunes)",
    'covr': "Cover Art (iTunes)",
    'aART': "Album Artist (iTunes)",
    '----': "Custom iTunes Metadata",
    'ilst': "iTunes Metadata List",
    'mean': "iTunes Metadata Mean",
    'data': "iTunes Metadata Data",
    'keyw': "Keywords",
    'catg': "Category",
    'purl': "Podcast URL",
    'egid': "Episode Global Unique ID",
    'desc': "Description",
    'ldes': "Long Description",
    'sdes': "Short Description",
    '©cpy': "Copyright (iTunes)",
    '©dir': "Director (iTunes)",
    '©ed1': "Edit Date 1 (iTunes)",
    '©ed2': "Edit Date 2 (iTunes)",
    '©ed3': "Edit Date 3 (iTunes)",
    '©fmt': "Format (iTunes)",
    '©inf': "Information (iTunes)",
    '©prd': "Producer (iTunes)",
    '©prf': "Performers (iTunes)",
    '©req': "Requirements (iTunes)",
    '©src': "Source (iTunes)",
    '©swr': "Software (iTunes)",
    'gnre': "Genre (iTunes old)",
    'hdvd': "HD Video (iTunes)",
    'pgap': "Gapless Playback (iTunes)",
    'pcst': "Podcast (iTunes)",
    'cpil': "Compilation (iTunes)",
    'rtng': "Rating (iTunes)",
    'stik': "Media Type (iTunes)",
    'tven': "TV Episode (iTunes)",
    'tves': "TV Episode Number (iTunes)",
    'tvnn': "TV Network Name (iTunes)",
    'tvsh': "TV Show Name (iTunes)",
    'tvsn': "TV Season (iTunes)",
    'apID': "Apple Store Account (iTunes)",
    'akID': "Apple Store Kind (iTunes)",
    'atID': "Album iTunes ID (iTunes)",
    'cnID': "iTunes Catalog ID (iTunes)",
    'geID': "Genre iTunes ID (iTunes)",
    'plID': "Playlist iTunes ID (iTunes)",
    'sfID': "Store Front ID (iTunes)",
    'soaa': "Sort Album Artist (iTunes)",
    'soal': "Sort Album (iTunes)",
    'soar': "Sort Artist (iTunes)",
    'soco': "Sort Composer (iTunes)",
    'sonm': "Sort Name (iTunes)",
    'sosn': "Sort Show (iTunes)",
    'xid ': "Vendor ID (iTunes)",
    # video sample entries
    'avc1': "AVC/H.264 Video",
    'avc2': "AVC/H.264 Video (parameter sets in-band)",
    'avc3': "AVC/H.264 Video (no parameter sets)",
    'avc4': "AVC/H.264 Video (parameter sets in-band, no SPS/PPS)",
    'hvc1': "HEVC/H.265 Video",
    'hev1': "HEVC/H.265 Video (parameter sets in-band)",
    'mp4v': "MPEG-4 Visual",
    's263': "H.263 Video",
    'vp08': "VP8 Video",
    'vp09': "VP9 Video",
    'av01': "AV1 Video",
    'dvh1': "Dolby Vision H.265",
    'dvhe': "Dolby Vision H.265 (profile 8)",
    'mjp2': "Motion JPEG 2000",
    # audio sample entries
    'mp4a': "MPEG-4 Audio (AAC)",
    'samr': "AMR Narrow-Band Audio",
    'sawb': "AMR Wide-Band Audio",
    'sawp': "AMR Wide-Band+ Audio",
    'ac-3': "AC-3 Audio (Dolby Digital)",
    'ec-3': "Enhanced AC-3 Audio (Dolby Digital Plus)",
    'dtsc': "DTS Coherent Acoustics",
    'dtsh': "DTS-HD High Resolution",
    'dtsl': "DTS-HD Master Audio",
    'dtse': "DTS Express",
    'alac': "Apple Lossless Audio",
    'fLaC': "FLAC Audio",
    'Opus': "Opus Audio",
    'mp3 ': "MPEG-1/2 Audio Layer III",
    'alaw': "A-law Audio",
    'ulaw': "μ-law Audio",
    'sowt': "PCM Signed Little-Endian",
    'twos': "PCM Signed Big-Endian",
    'raw ': "PCM Uncompressed",
    'lpcm': "Linear PCM",
    # text and subtitle sample entries
    'tx3g': "3GPP Timed Text",
    'text': "QuickTime Text",
    'wvtt': "WebVTT Subtitle",
    'stpp': "XML Subtitle",
    'c608': "CEA-608 Closed Captions",
    'c708': "CEA-708 Closed Captions",
    # metadata sample entries
    'mett': "Metadata Text",
    'metx': "Metadata XML",
    'urim': "URI Metadata",
    # protection
    'sinf': "Protection Scheme Information",
    'frma': "Original Format",
    'schm': "Scheme Type",
    'schi': "Scheme Information",
    'encv': "Encrypted Video Sample Entry",
    'enca': "Encrypted Audio Sample Entry",
    'enct': "Encrypted Text Sample Entry",
    'rinf': "Restricted Scheme Information",
    'trgr': "Track Grouping",
    'grpl': "Group List",
    # QuickTime
    'wide': "QuickTime Wide Atom (deprecated)",
    'pnot': "Preview",
    'clip': "Clipping",
    'crgn': "Clipping Region",
    'matt': "Matte",
    'kmat': "Compressed Matte",
    'load': "Track Load Settings",
    'imap': "Track Input Map",
    'uuid': "User Extension (UUID)",
    # codec configuration
    'esds': "MPEG-4 Elementary Stream Descriptor",
    'avcC': "AVC Configuration",
    'hvcC': "HEVC Configuration",
    'vpcC': "VP Codec Configuration",
    'av1C': "AV1 Configuration",
    'dac3': "AC-3 Specific Box",
    'dec3': "Enhanced AC-3 Specific Box",
    'dvc1': "VC-1 Configuration",
    'btrt': "Bit Rate",
    'colr': "Color Information",
    'pasp': "Pixel Aspect Ratio",
    'clap': "Clean Aperture",
    'mdcv': "Mastering Display Color Volume",
    'clli': "Content Light Level",
    'fiel': "Field/Frame Information",
    # DASH and streaming
    'tfxd': "Track Fragment Extended Decode Time",
    'tfrf': "Track Fragment Reference",
    'ssix': "Sub-Sample Index",
    'prft': "Producer Reference Time",
    'emsg': "Event Message",
}

def box_type_text(type_bs) -> str:
  ''' Return the display form of a 4 byte box type:
      `0xa9` becomes the copyright sign `©`,
      printable ASCII is kept
      and any other byte becomes `?`.
  '''
  return ''.join(
      '©' if b == 0xa9 else chr(b) if 0x20 <= b < 0x7f else '?'
      for b in type_bs
  )

@require(lambda box_type: len(box_type) == 4)
@typechecked
def box_description(box_type: str) -> str:
  ''' Return the human description of `box_type`.
  '''
  return BOX_DESCRIPTIONS.get(box_type, "Unknown Box Type")

def is_itunes_item_type(box_type):
  ''' Test whether `box_type` is an iTunes metadata item.
  '''
  return box_type.startswith('©') or box_type in ITUNES_ITEM_TYPES

def is_container_type(box_type):
  ''' Test whether `box_type` is a container of boxes.
  '''
  return box_type in CONTAINER_BOX_TYPES or is_itunes_item_type(box_type)

##############################################################################
# box content

class FileTypeContent(namedtuple('FileTypeContent',
                                 'major_brand minor_version compatible_brands')):
  ''' The content of an `ftyp` or `styp` box - ISO14496 section 4.3.
  '''

  def __str__(self):
    return (
        f'major_brand={self.major_brand!r} minor_version={self.minor_version}'
        f' compatible_brands={",".join(map(repr, self.compatible_brands))}'
    )

class MovieHeaderContent(namedtuple(
    'MovieHeaderContent',
    'version creation_time modification_time timescale duration rate volume',
)):
  ''' The content of an `mvhd` Movie Header box - ISO14496 section 8.2.2.
  '''

  @property
  def duration_s(self):
    ''' The duration in seconds, or `None` for a zero timescale.
    '''
    return self.duration / self.timescale if self.timescale else None

  def __str__(self):
    return (
        f'timescale={self.timescale} duration={self.duration}'
        f' rate={self.rate:.2f} volume={self.volume:.2f}'
    )

class TrackHeaderContent(namedtuple(
    'TrackHeaderContent',
    'version flags creation_time modification_time track_id duration volume width height',
)):
  ''' The content of a `tkhd` Track Header box - ISO14496 section 8.3.2.
  '''

  @property
  def enabled(self):
    ''' Whether the track is enabled.
    '''
    return bool(self.flags & 0x000001)

  def __str__(self):
    return (
        f'track_id={self.track_id} duration={self.duration}'
        f' volume={self.volume:.2f} {self.width:g}x{self.height:g}'
    )

class MediaHeaderContent(namedtuple(
    'MediaHeaderContent',
    'version creation_time modification_time timescale duration language',
)):
  ''' The content of an `mdhd` Media Header box - ISO14496 section 8.4.2.
  '''

  def __str__(self):
    return (
        f'timescale={self.timescale} duration={self.duration}'
        f' language={self.language!r}'
    )

class HandlerContent(namedtuple('HandlerContent', 'handler_type name')):
  ''' The content of an `hdlr` Handler Reference box - ISO14496 section 8.4.3.
  '''

  def __str__(self):
    return f'handler_type={self.handler_type!r} name={self.name!r}'

class StringContent(namedtuple('StringContent', 'text')):
  ''' The text of a `mean` or `name` box in a `----` item.
  '''

  def __str__(self):
    return self.text

def _parse_fields(struct_class, bfr):
  ''' Parse an instance of the `BinaryStruct` `struct_class` from `bfr`,
      converting a short read into a `SizeViolation`.
  '''
  try:
    return struct_class.parse(bfr)
  except EOFError as e:
    raise SizeViolation(f'{struct_class.__name__}: {e}') from e

def decode_ftyp(data):
  ''' Decode an `ftyp` payload: major brand, minor version, compatible brands.
  '''
  bfr = CornuCopyBuffer.from_bytes(data)
  hdr = _parse_fields(FTYPHeader, bfr)
  tail = data[FTYPHeader.length:]
  if len(tail) % 4:
    debug("ftyp: ignoring %d trailing bytes", len(tail) % 4)
  return FileTypeContent(
      major_brand=box_type_text(hdr.major_brand),
      minor_version=hdr.minor_version,
      compatible_brands=tuple(
          box_type_text(tail[offset:offset + 4])
          for offset in range(0, len(tail) - 3, 4)
      ),
  )

def decode_mvhd(data):
  ''' Decode an `mvhd` payload.
  '''
  bfr = CornuCopyBuffer.from_bytes(data)
  fullbox = _parse_fields(FullBoxHeader, bfr)
  times = _parse_fields(MVHDTimes64 if fullbox.version == 1 else MVHDTimes32, bfr)
  rate_volume = _parse_fields(MVHDRateVolume, bfr)
  return MovieHeaderContent(
      version=fullbox.version,
      creation_time=times.creation_time,
      modification_time=times.modification_time,
      timescale=times.timescale,
      duration=times.duration,
      rate=rate_volume.rate_fixed / 65536.0,
      volume=rate_volume.volume_fixed / 256.0,
  )

def decode_tkhd(data):
  ''' Decode a `tkhd` payload.
  '''
  bfr = CornuCopyBuffer.from_bytes(data)
  fullbox = _parse_fields(FullBoxHeader, bfr)
  times = _parse_fields(TKHDTimes64 if fullbox.version == 1 else TKHDTimes32, bfr)
  tail = _parse_fields(TKHDTail, bfr)
  return TrackHeaderContent(
      version=fullbox.version,
      flags=int.from_bytes(fullbox.flags_bs, 'big'),
      creation_time=times.creation_time,
      modification_time=times.modification_time,
      track_id=times.track_id,
      duration=times.duration,
      volume=tail.volume_fixed / 256.0,
      width=tail.width_fixed / 65536.0,
      height=tail.height_fixed / 65536.0,
  )

def decode_mdhd(data):
  ''' Decode an `mdhd` payload.
  '''
  bfr = CornuCopyBuffer.from_bytes(data)
  fullbox = _parse_fields(FullBoxHeader, bfr)
  times = _parse_fields(MVHDTimes64 if fullbox.version == 1 else MVHDTimes32, bfr)
  lang = _parse_fields(MDHDLanguage, bfr)
  # ISO 639-2/T code packed as 3 5-bit values offset from 0x60
  language_short = lang.language_short
  language = bytes(
      x + 0x60 for x in (
          (language_short >> 10) & 0x1f,
          (language_short >> 5) & 0x1f,
          language_short & 0x1f,
      )
  ).decode('ascii', errors='replace')
  return MediaHeaderContent(
      version=fullbox.version,
      creation_time=times.creation_time,
      modification_time=times.modification_time,
      timescale=times.timescale,
      duration=times.duration,
      language=language,
  )

def decode_hdlr(data):
  ''' Decode an `hdlr` payload.
      The name is NUL terminated UTF-8, or a counted string in QuickTime files.
  '''
  bfr = CornuCopyBuffer.from_bytes(data)
  _parse_fields(FullBoxHeader, bfr)
  hdr = _parse_fields(HDLRHeader, bfr)
  name_bs = bytes(data[FullBoxHeader.length + HDLRHeader.length:])
  if name_bs and name_bs[0] == len(name_bs) - 1:
    name_bs = name_bs[1:]
  return HandlerContent(
      handler_type=box_type_text(hdr.handler_type_bs),
      name=name_bs.rstrip(b'\0').decode('utf-8', errors='replace'),
  )

# decoders for leaf box payloads
LEAF_DECODERS = {
    'ftyp': decode_ftyp,
    'styp': decode_ftyp,
    'mvhd': decode_mvhd,
    'tkhd': decode_tkhd,
    'mdhd': decode_mdhd,
    'hdlr': decode_hdlr,
}

##############################################################################
# the box tree

class Box(namedtuple(
    'Box',
    'box_type type_bs offset size header_size kind children data content truncated',
)):
  ''' An ISO14496 box.

      Attributes:
      * `box_type`: the display form of the type, see `box_type_text`
      * `type_bs`: the raw 4 type bytes
      * `offset`: the absolute offset of the box header
      * `size`: the declared box size including the header;
        for an extended size box this is the 64 bit size
      * `header_size`: the length of the box header
      * `kind`: `'container'`, `'leaf'` or `'bulk'`
      * `children`: a tuple of child `Box`es for containers
      * `data`: the payload bytes of leaves;
        empty for bulk leaves unless their data were requested
      * `content`: decoded content or `None`
      * `truncated`: true if the box overran its enclosing region
  '''

  CONTAINER = 'container'
  LEAF = 'leaf'
  BULK = 'bulk'

  @property
  def description(self):
    ''' The human description of this box's type.
    '''
    return box_description(self.box_type)

  @property
  def payload_size(self):
    ''' The declared size of the payload after the header.
    '''
    return max(0, self.size - self.header_size)

  @property
  def end_offset(self):
    ''' The declared offset just past this box.
    '''
    return self.offset + self.size

  @property
  def is_container(self):
    ''' Whether this box was expanded as a container.
    '''
    return self.kind == self.CONTAINER

  @property
  def is_technical(self):
    ''' Whether this is a low level box hidden unless verbose.
    '''
    return self.box_type in TECHNICAL_BOX_TYPES

  def presented_children(self, verbose=False):
    ''' The children to present, omitting technical boxes unless `verbose`.
    '''
    if verbose:
      return self.children
    return tuple(child for child in self.children if not child.is_technical)

  def walk(self, depth=0):
    ''' Generator yielding `(depth,box)` for this box and its descendants.
    '''
    yield depth, self
    for child in self.children:
      yield from child.walk(depth + 1)

  def descendants(self, sub_box_types):
    ''' Generator yielding the descendants matching the type path
        `sub_box_types`, a list of box types or a dotted string.
    '''
    if isinstance(sub_box_types, str):
      sub_box_types = sub_box_types.split('.')
    box_type, *tail_types = sub_box_types
    for child in self.children:
      if child.box_type == box_type:
        if tail_types:
          yield from child.descendants(tail_types)
        else:
          yield child

class BoxTree(namedtuple('BoxTree', 'boxes start_offset end_offset')):
  ''' The top level boxes of a region.
  '''

  def walk(self):
    ''' Generator yielding `(depth,box)` for every box in the tree.
    '''
    for box in self.boxes:
      yield from box.walk()

  def descendants(self, type_path):
    ''' Generator yielding the boxes matching the dotted `type_path`,
        eg `'moov.udta.meta.ilst'`.
    '''
    box_type, *tail_types = type_path.split('.')
    for box in self.boxes:
      if box.box_type == box_type:
        if tail_types:
          yield from box.descendants(tail_types)
        else:
          yield box

  def presented_boxes(self, verbose=False):
    ''' The top level boxes to present, omitting technical boxes unless `verbose`.
    '''
    if verbose:
      return self.boxes
    return tuple(box for box in self.boxes if not box.is_technical)

  @property
  def file_type(self):
    ''' The `FileTypeContent` of the first `ftyp` box, or `None`.
    '''
    for box in self.boxes:
      if box.box_type == 'ftyp':
        return box.content
    return None

##############################################################################
# parsing

class BoxWalker:
  ''' A recursive descent walker over the boxes in a `CornuCopyBuffer`.
  '''

  def __init__(
      self,
      bfr: CornuCopyBuffer,
      diagnostics: Diagnostics,
      *,
      include_bulk_data=False,
      header_only=False,
      max_depth=MAX_BOX_DEPTH,
  ):
    self.bfr = bfr
    self.diagnostics = diagnostics
    self.include_bulk_data = include_bulk_data
    self.header_only = header_only
    self.max_depth = max_depth

  def skipto(self, end_offset):
    ''' Advance the buffer to `end_offset`, seeking where possible.
    '''
    bfr = self.bfr
    if bfr.offset < end_offset:
      bfr.skipto(end_offset, short_ok=True)

  def take(self, box_end):
    ''' Take the payload bytes up to `box_end`.
        Raises `BoundsError` on a short read.
    '''
    return bytes(take_bounded(self.bfr, box_end - self.bfr.offset, box_end))

  def parse_boxes(self, end_offset, *, depth=0, path='', parent_type=None):
    ''' Parse boxes up to `end_offset`, return a tuple of `Box`es.
        The walk of this region stops after a malformed or truncated box.
    '''
    boxes = []
    while self.bfr.offset < end_offset:
      if depth == 0 and self.bfr.at_eof():
        break
      box = self.parse_box(
          end_offset, depth=depth, path=path, parent_type=parent_type
      )
      if box is None:
        break
      boxes.append(box)
      if box.truncated:
        break
    return tuple(boxes)

  def _stop(self, category, message, offset, path, end_offset):
    ''' Record an error stopping the walk of this region, skip to its end.
    '''
    self.diagnostics.error(category, message, offset=offset, path=path)
    self.skipto(end_offset)

  # pylint: disable=too-many-locals,too-many-branches,too-many-statements
  def parse_box(self, end_offset, *, depth, path, parent_type):
    ''' Parse a single box whose enclosing region ends at `end_offset`.
        Return the `Box`, or `None` if no box could be parsed,
        in which case the buffer is positioned at `end_offset`.
    '''
    bfr = self.bfr
    diagnostics = self.diagnostics
    offset = bfr.offset
    available = end_offset - offset
    if available < BoxHeaderStruct.length:
      diagnostics.warning(
          SizeViolation.category(),
          f'{available} trailing bytes, too short for a box header',
          offset=offset,
          path=path,
      )
      self.skipto(end_offset)
      return None
    try:
      hdr = BoxHeaderStruct.parse(bfr)
    except EOFError as e:
      diagnostics.error(
          SizeViolation.category(),
          f'input ended in box header: {e}',
          offset=offset,
          path=path,
      )
      return None
    box_type = box_type_text(hdr.type_bs)
    box_path = f'{path}.{box_type}' if path else box_type
    with Pfx("%s@%d", box_type, offset):
      header_size = BoxHeaderStruct.length
      size = hdr.size32
      if size == 1:
        if available < header_size + UInt64BE.length:
          self._stop(
              SizeViolation.category(),
              'truncated extended size field',
              offset,
              box_path,
              end_offset,
          )
          return None
        size = UInt64BE.parse_value(bfr)
        header_size += UInt64BE.length
      elif size == 0:
        size = available
        if depth > 0:
          diagnostics.warning(
              SizeViolation.category(),
              'size 0 (to end of region) inside a container',
              offset=offset,
              path=box_path,
          )
      if box_type == 'uuid':
        # a 16 byte extended type follows
        if size < header_size + 16 or available < header_size + 16:
          self._stop(
              SizeViolation.category(),
              'truncated uuid extended type',
              offset,
              box_path,
              end_offset,
          )
          return None
        bfr.skip(16, short_ok=True)
        header_size += 16
      if size < header_size:
        self._stop(
            SizeViolation.category(),
            f'box size {size} is smaller than its {header_size} byte header',
            offset,
            box_path,
            end_offset,
        )
        return None
      truncated = size > available
      if truncated:
        diagnostics.error(
            SizeViolation.category(),
            f'box size {size} extends {size - available} bytes'
            f' beyond its enclosing region',
            offset=offset,
            path=box_path,
        )
      box_end = offset + min(size, available)
      payload_size = box_end - bfr.offset
      box = Box(
          box_type=box_type,
          type_bs=bytes(hdr.type_bs),
          offset=offset,
          size=size,
          header_size=header_size,
          kind=Box.LEAF,
          children=(),
          data=b'',
          content=None,
          truncated=truncated,
      )
      if box_type not in BOX_DESCRIPTIONS and not is_itunes_item_type(
          box_type):
        diagnostics.info(
            UNKNOWN_TYPE,
            f'unknown box type {box_type!r}',
            offset=offset,
            path=box_path,
        )
      try:
        if is_container_type(box_type):
          if self.header_only:
            self.skipto(box_end)
            return box._replace(kind=Box.CONTAINER)
          if depth >= self.max_depth:
            diagnostics.warning(
                DepthExceeded.category(),
                f'nesting depth exceeds {self.max_depth},'
                ' container not expanded',
                offset=offset,
                path=box_path,
            )
            self.skipto(box_end)
            return box
          box = self._parse_container(
              box, box_end, payload_size, depth=depth, path=box_path
          )
        else:
          box = self._parse_leaf(
              box, box_end, payload_size, path=box_path, parent_type=parent_type
          )
      except DissectionError as e:
        diagnostics.from_exception(e, Severity.ERROR, offset=offset, path=box_path)
      # discard anything unconsumed, eg after a malformed child
      self.skipto(box_end)
      return box

  def _parse_container(self, box, box_end, payload_size, *, depth, path):
    ''' Parse the children of the container `box`.
    '''
    bfr = self.bfr
    preamble = CONTAINER_PREAMBLE_SIZES.get(box.box_type, 0)
    if box.box_type == 'meta' and payload_size >= 8:
      # QuickTime meta boxes have no version and flags
      head = bfr.peek(8, short_ok=True)
      if bytes(head[4:8]) == b'hdlr':
        debug("QuickTime style meta box, no version/flags")
        preamble = 0
    if preamble:
      if payload_size < preamble:
        raise SizeViolation(
            f'{box.box_type} payload of {payload_size} bytes'
            f' is shorter than its {preamble} byte preamble'
        )
      bfr.skip(preamble, short_ok=True)
    children = self.parse_boxes(
        box_end, depth=depth + 1, path=path, parent_type=box.box_type
    )
    content = None
    if is_itunes_item_type(box.box_type):
      for child in children:
        if child.box_type == 'data' and child.content is not None:
          content = child.content
          break
    return box._replace(kind=Box.CONTAINER, children=children, content=content)

  def _parse_leaf(self, box, box_end, payload_size, *, path, parent_type):
    ''' Parse the leaf `box`.
    '''
    # classify by the declared size, a truncated bulk box is still bulk
    if box.payload_size > BULK_LEAF_THRESHOLD:
      if self.include_bulk_data:
        data = self.take(box_end)
      else:
        debug("skip %d byte bulk payload", payload_size)
        self.skipto(box_end)
        data = b''
      return box._replace(kind=Box.BULK, data=data)
    if self.header_only and box.box_type not in ('ftyp', 'styp'):
      self.skipto(box_end)
      return box
    data = self.take(box_end)
    box = box._replace(data=data)
    content = None
    box_type = box.box_type
    try:
      if box_type == 'data' and parent_type is not None and is_itunes_item_type(
          parent_type):
        content = decode_data_box(
            parent_type,
            data,
            self.diagnostics,
            offset=box.offset + box.header_size,
            path=path,
        )
      elif box_type in ('mean', 'name') and parent_type == '----':
        content = StringContent(decode_mean_name(data))
      else:
        decoder = LEAF_DECODERS.get(box_type)
        if decoder is not None:
          content = decoder(data)
    except DissectionError as e:
      self.diagnostics.from_exception(
          e, Severity.INFO, offset=box.offset, path=path
      )
    return box._replace(content=content)

def dissect_isobmff(
    bfr: CornuCopyBuffer,
    end_offset: int,
    diagnostics: Diagnostics,
    *,
    include_bulk_data=False,
    header_only=False,
) -> BoxTree:
  ''' Dissect the boxes in `bfr` from its current offset to `end_offset`.
      Return a `BoxTree`.

      Parameters:
      * `bfr`: the `CornuCopyBuffer`
      * `end_offset`: the offset of the end of the region,
        normally the file size
      * `diagnostics`: the `Diagnostics` collecting problems
      * `include_bulk_data`: read the payloads of bulk leaves
        instead of skipping them
      * `header_only`: list the top level boxes without expanding them
  '''
  start_offset = bfr.offset
  walker = BoxWalker(
      bfr,
      diagnostics,
      include_bulk_data=include_bulk_data,
      header_only=header_only,
  )
  with Pfx("ISOBMFF"):
    boxes = walker.parse_boxes(end_offset)
  return BoxTree(boxes=boxes, start_offset=start_offset, end_offset=end_offset)
