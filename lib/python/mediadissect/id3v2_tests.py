#!/usr/bin/env python3
#
# Unit tests for mediadissect.id3v2.
#

''' Unit tests for mediadissect.id3v2.
'''

import sys
import unittest

from cs.buffer import CornuCopyBuffer
from cs.logutils import setup_logging

from .diagnostics import Diagnostics, Severity, StructuralError
from .id3v2 import (
    AttachedPictureContent,
    BinaryContent,
    ChapterContent,
    CommentContent,
    TableOfContentsContent,
    TextContent,
    UserTextContent,
    dissect_id3v2,
    format_ms,
)
from .primitives import encode_synchsafe
from .textenc import TextEncoding

def frame_bytes(frame_id, payload, major=4, flags=0, size=None):
  ''' Construct an ID3v2 frame.
  '''
  if size is None:
    size = len(payload)
  size_bs = encode_synchsafe(size) if major >= 4 else size.to_bytes(4, 'big')
  return frame_id.encode('ascii') + size_bs + flags.to_bytes(2, 'big') + payload

def tag_bytes(body, major=4, flags=0, size=None):
  ''' Construct an ID3v2 tag around `body`.
  '''
  if size is None:
    size = len(body)
  return b'ID3' + bytes((major, 0, flags)) + encode_synchsafe(size) + body

def dissect_bytes(bs, **kw):
  ''' Dissect the tag in `bs`, return `(tag,diagnostics)`.
  '''
  diagnostics = Diagnostics()
  tag = dissect_id3v2(CornuCopyBuffer.from_bytes(bs), diagnostics, **kw)
  return tag, diagnostics

def picture_payload(data=b'\x89PNG\r\n\x1a\n'):
  return b'\x00image/png\x00\x03cover\x00' + data

class TestTag(unittest.TestCase):
  ''' Tests for tag level dissection.
  '''

  def test00hello(self):
    title = frame_bytes('TIT2', b'\x03Hello\0\0\0\0')
    self.assertEqual(len(title), 20)
    bs = tag_bytes(title + bytes(128 - len(title)))
    self.assertEqual(bs[6:10], b'\0\0\x01\0')
    tag, diagnostics = dissect_bytes(bs)
    self.assertEqual(tag.version, (4, 0))
    self.assertEqual(tag.size, 128)
    self.assertEqual(len(tag.frames), 1)
    frame = tag.frames[0]
    self.assertEqual(frame.frame_id, 'TIT2')
    self.assertEqual(frame.size, 10)
    self.assertEqual(frame.offset, 10)
    self.assertIsInstance(frame.content, TextContent)
    self.assertIs(frame.content.encoding, TextEncoding.UTF_8)
    self.assertEqual(frame.content.value, 'Hello')
    self.assertFalse(
        [diag for diag in diagnostics if diag.severity >= Severity.WARNING]
    )

  def test01frame_order_and_offsets(self):
    frames = [
        frame_bytes('TIT2', b'\x00Title'),
        frame_bytes('TPE1', b'\x00Artist'),
        frame_bytes('TALB', b'\x03Album'),
        frame_bytes('COMM', b'\x00engdesc\x00comment text'),
        frame_bytes('TXXX', b'\x00key\x00value'),
    ]
    tag, _ = dissect_bytes(tag_bytes(b''.join(frames) + bytes(20)))
    self.assertEqual(
        [frame.frame_id for frame in tag.frames],
        ['TIT2', 'TPE1', 'TALB', 'COMM', 'TXXX'],
    )
    offset = 10
    for frame, frame_bs in zip(tag.frames, frames):
      self.assertEqual(frame.offset, offset)
      self.assertTrue(frame.valid)
      offset += len(frame_bs)
    self.assertEqual(tag.frames[1].content.value, 'Artist')
    self.assertEqual(
        tag.frames[3].content,
        CommentContent(TextEncoding.ISO_8859_1, 'eng', 'desc', 'comment text'),
    )
    self.assertEqual(
        tag.frames[4].content,
        UserTextContent(TextEncoding.ISO_8859_1, 'key', ('value',)),
    )

  def test02oversized(self):
    tag, diagnostics = dissect_bytes(tag_bytes(b'', size=100_000_001))
    self.assertTrue(tag.oversized)
    self.assertEqual(tag.frames, ())
    self.assertEqual(diagnostics.worst, Severity.FATAL)
    self.assertEqual(diagnostics[-1].category, 'SizeViolation')

  def test03large_tiers(self):
    _, diagnostics = dissect_bytes(tag_bytes(b'', size=60_000_000))
    self.assertEqual(diagnostics[0].severity, Severity.WARNING)
    _, diagnostics = dissect_bytes(tag_bytes(b'', size=20_000_000))
    self.assertEqual(diagnostics[0].severity, Severity.INFO)

  def test04frame_overrun(self):
    body = (
        frame_bytes('TIT2', b'\x00Title') +
        frame_bytes('TPE1', b'\x00Artist', size=1000) +
        frame_bytes('TALB', b'\x00Album')
    )
    tag, diagnostics = dissect_bytes(tag_bytes(body))
    self.assertEqual([frame.frame_id for frame in tag.frames], ['TIT2', 'TPE1'])
    self.assertTrue(tag.frames[0].valid)
    self.assertEqual(tag.frames[0].content.value, 'Title')
    self.assertFalse(tag.frames[1].valid)
    self.assertIsNone(tag.frames[1].content)
    errors = [diag for diag in diagnostics if diag.severity == Severity.ERROR]
    self.assertEqual(len(errors), 1)
    self.assertEqual(errors[0].category, 'SizeViolation')
    self.assertEqual(errors[0].offset, 10 + 16)

  def test05unknown_version(self):
    tag, diagnostics = dissect_bytes(
        tag_bytes(frame_bytes('TIT2', b'\x00Title'), major=2)
    )
    self.assertEqual(tag.frames, ())
    self.assertEqual(diagnostics[0].severity, Severity.WARNING)

  def test06bad_magic(self):
    with self.assertRaises(StructuralError):
      dissect_bytes(b'ID4\x04\0\0\0\0\0\0')
    with self.assertRaises(StructuralError):
      dissect_bytes(b'ID3\x04')

  def test07v23_sizes(self):
    # v2.3 frame sizes are plain big endian, 200 is not synchsafe
    text = b'\x00' + b'x' * 199
    tag, diagnostics = dissect_bytes(
        tag_bytes(frame_bytes('TIT2', text, major=3), major=3)
    )
    self.assertEqual(tag.frames[0].size, 200)
    self.assertEqual(tag.frames[0].content.value, 'x' * 199)
    self.assertEqual(len(diagnostics), 0)

  def test08v24_bad_frame_size(self):
    body = b'TIT2\0\0\0\x86\0\0' + b'\x00' + b'y' * 133
    tag, diagnostics = dissect_bytes(tag_bytes(body))
    self.assertEqual(tag.frames[0].size, 0x86)
    self.assertEqual(diagnostics[0].category, 'EncodingViolation')

  def test09padding_and_bad_id(self):
    body = frame_bytes('TIT2', b'\x00Title') + b'tit2' + bytes(20)
    tag, diagnostics = dissect_bytes(tag_bytes(body))
    self.assertEqual(len(tag.frames), 1)
    self.assertEqual(diagnostics[0].category, 'StructuralError')

  def test10unsynchronised_v23(self):
    payload = b'\x00a\xff\x00b'
    body = frame_bytes('TIT2', b'\x00a\xffb', major=3)
    # stuff the tag body as an unsynchronising writer would
    stuffed = body.replace(b'\xff', b'\xff\x00')
    self.assertIn(payload, stuffed)
    tag, _ = dissect_bytes(tag_bytes(stuffed, major=3, flags=0x80))
    self.assertTrue(tag.header.unsynchronisation)
    self.assertEqual(tag.frames[0].content.value, 'a\xffb')

  def test11extended_header(self):
    ext = encode_synchsafe(6) + b'\x01\x00'
    body = ext + frame_bytes('TIT2', b'\x00Title')
    tag, _ = dissect_bytes(tag_bytes(body, flags=0x40))
    self.assertEqual(tag.extended_header.size, 6)
    self.assertEqual(tag.frames[0].offset, 10 + 6)

  def test12header_only(self):
    tag, _ = dissect_bytes(
        tag_bytes(frame_bytes('TIT2', b'\x00Title')), header_only=True
    )
    self.assertEqual(tag.frames, ())
    self.assertEqual(tag.header.flag_names(), [])

  def test13picture(self):
    tag, _ = dissect_bytes(tag_bytes(frame_bytes('APIC', picture_payload())))
    content = tag.frames[0].content
    self.assertIsInstance(content, AttachedPictureContent)
    self.assertEqual(content.mime_type, 'image/png')
    self.assertEqual(content.picture_type, 3)
    self.assertEqual(content.picture_type_label, 'Cover (front)')
    self.assertEqual(content.description, 'cover')
    self.assertEqual(content.data, b'\x89PNG\r\n\x1a\n')

  def test14compressed(self):
    tag, diagnostics = dissect_bytes(
        tag_bytes(frame_bytes('TIT2', b'x\x9c\0\0', flags=0x0008))
    )
    self.assertTrue(tag.frames[0].compression)
    self.assertIsInstance(tag.frames[0].content, BinaryContent)
    self.assertEqual(diagnostics[0].severity, Severity.INFO)

  def test15v23_extended_header(self):
    ext = (6).to_bytes(4, 'big') + b'\0\0' + (0).to_bytes(4, 'big')
    body = ext + frame_bytes('TIT2', b'\x00Title', major=3)
    tag, diagnostics = dissect_bytes(tag_bytes(body, major=3, flags=0x40))
    self.assertEqual(tag.extended_header.size, 10)
    self.assertEqual(tag.extended_header.padding_size, 0)
    self.assertIsNone(tag.extended_header.crc)
    self.assertEqual(tag.frames[0].offset, 10 + 10)
    self.assertEqual(tag.frames[0].content.value, 'Title')
    self.assertEqual(len(diagnostics), 0)

  def test16v23_bad_extended_header_size(self):
    for declared_size in (0, 4, 7):
      with self.subTest(declared_size=declared_size):
        ext = declared_size.to_bytes(4, 'big') + bytes(6)
        body = ext + frame_bytes('TIT2', b'\x00Title', major=3)
        tag, diagnostics = dissect_bytes(tag_bytes(body, major=3, flags=0x40))
        self.assertIsNone(tag.extended_header)
        self.assertEqual(tag.frames, ())
        self.assertEqual(diagnostics[0].severity, Severity.ERROR)
        self.assertEqual(diagnostics[0].category, 'SizeViolation')

  def test17frame_unsynchronisation(self):
    stuffed = b'\x00a\xff\x00b'
    tag, _ = dissect_bytes(
        tag_bytes(frame_bytes('TIT2', stuffed, flags=0x0002))
    )
    frame = tag.frames[0]
    self.assertTrue(frame.unsynchronisation)
    self.assertFalse(frame.data_length_indicator)
    self.assertEqual(frame.size, len(stuffed))
    self.assertEqual(frame.content.value, 'a\xffb')

  def test18data_length_indicator(self):
    payload = encode_synchsafe(6) + b'\x00Title'
    tag, diagnostics = dissect_bytes(
        tag_bytes(frame_bytes('TIT2', payload, flags=0x0001))
    )
    frame = tag.frames[0]
    self.assertTrue(frame.data_length_indicator)
    self.assertEqual(frame.content.value, 'Title')
    self.assertEqual(len(diagnostics), 0)
    # both flags: the indicator precedes the unsynchronised data
    payload = encode_synchsafe(4) + b'\x00a\xff\x00b'
    tag, _ = dissect_bytes(
        tag_bytes(frame_bytes('TIT2', payload, flags=0x0003))
    )
    self.assertEqual(tag.frames[0].content.value, 'a\xffb')

  def test19data_length_mismatch(self):
    payload = encode_synchsafe(9) + b'\x00Title'
    tag, diagnostics = dissect_bytes(
        tag_bytes(frame_bytes('TIT2', payload, flags=0x0001))
    )
    self.assertEqual(tag.frames[0].content.value, 'Title')
    self.assertEqual(
        [(diag.severity, diag.category) for diag in diagnostics],
        [(Severity.INFO, 'SizeViolation')],
    )
    # a data length indicator which is not synchsafe spoils the frame
    payload = b'\0\0\0\x86' + b'\x00Title'
    tag, diagnostics = dissect_bytes(
        tag_bytes(frame_bytes('TIT2', payload, flags=0x0001))
    )
    self.assertIsInstance(tag.frames[0].content, BinaryContent)
    self.assertEqual(diagnostics[0].category, 'EncodingViolation')

  def test20unknown_encoding(self):
    tag, diagnostics = dissect_bytes(
        tag_bytes(frame_bytes('TIT2', b'\x05Hello'))
    )
    content = tag.frames[0].content
    self.assertIsInstance(content, TextContent)
    self.assertIs(content.encoding, TextEncoding.ISO_8859_1)
    self.assertEqual(content.value, 'Hello')
    self.assertEqual(len(diagnostics), 1)
    self.assertEqual(diagnostics[0].severity, Severity.WARNING)
    self.assertEqual(diagnostics[0].category, 'EncodingViolation')
    self.assertEqual(diagnostics[0].offset, 10 + 10)

class TestChapters(unittest.TestCase):
  ''' Tests for the Chapter Addendum frames.
  '''

  def test00chapter(self):
    subframes = (
        frame_bytes('TIT2', b'\x03Chapter One') +
        frame_bytes('APIC', picture_payload())
    )
    chap_payload = (
        b'ch1\0' + (0).to_bytes(4, 'big') + (5000).to_bytes(4, 'big') +
        b'\xff\xff\xff\xff' * 2 + subframes
    )
    tag, diagnostics = dissect_bytes(tag_bytes(frame_bytes('CHAP', chap_payload)))
    self.assertEqual(len(tag.frames), 1)
    chapter = tag.frames[0].content
    self.assertIsInstance(chapter, ChapterContent)
    self.assertEqual(chapter.element_id, 'ch1')
    self.assertEqual(chapter.start_ms, 0)
    self.assertEqual(chapter.end_ms, 5000)
    self.assertEqual(chapter.duration_ms, 5000)
    self.assertIsNone(chapter.start_offset)
    self.assertFalse(chapter.has_byte_offsets)
    self.assertEqual(len(chapter.frames), 2)
    title, picture = chapter.frames
    self.assertEqual(title.content.value, 'Chapter One')
    # embedded frame offsets are relative to the CHAP payload
    self.assertEqual(title.offset, 20)
    self.assertIsInstance(picture.content, AttachedPictureContent)
    self.assertEqual(picture.content.mime_type, 'image/png')
    self.assertEqual(
        [(depth, frame.frame_id) for depth, frame in tag.walk()],
        [(0, 'CHAP'), (1, 'TIT2'), (1, 'APIC')],
    )
    self.assertFalse(
        [diag for diag in diagnostics if diag.severity >= Severity.WARNING]
    )

  def test01table_of_contents(self):
    ctoc_payload = (
        b'toc\0' + bytes((0x03, 2)) + b'ch1\0ch2\0' +
        frame_bytes('TIT2', b'\x00Contents')
    )
    tag, _ = dissect_bytes(tag_bytes(frame_bytes('CTOC', ctoc_payload)))
    toc = tag.frames[0].content
    self.assertIsInstance(toc, TableOfContentsContent)
    self.assertEqual(toc.element_id, 'toc')
    self.assertTrue(toc.top_level)
    self.assertTrue(toc.ordered)
    self.assertEqual(toc.child_ids, ('ch1', 'ch2'))
    self.assertEqual(toc.frames[0].content.value, 'Contents')

  def test02chapter_end_before_start(self):
    chap_payload = (
        b'ch1\0' + (9000).to_bytes(4, 'big') + (1000).to_bytes(4, 'big') +
        (100).to_bytes(4, 'big') + (200).to_bytes(4, 'big')
    )
    tag, diagnostics = dissect_bytes(tag_bytes(frame_bytes('CHAP', chap_payload)))
    chapter = tag.frames[0].content
    self.assertEqual(chapter.duration_ms, 0)
    self.assertEqual((chapter.start_offset, chapter.end_offset), (100, 200))
    self.assertEqual(diagnostics[0].severity, Severity.WARNING)

  def test03short_chapter(self):
    tag, diagnostics = dissect_bytes(
        tag_bytes(frame_bytes('CHAP', b'ch1\0\0\0'))
    )
    self.assertIsInstance(tag.frames[0].content, BinaryContent)
    self.assertEqual(diagnostics[0].category, 'BoundsError')

  def test04nested_chapter(self):
    inner_payload = b'ch2\0' + bytes(16) + frame_bytes('TIT2', b'\x00Inner')
    chap_payload = (
        b'ch1\0' + bytes(8) + b'\xff\xff\xff\xff' * 2 +
        frame_bytes('CHAP', inner_payload)
    )
    tag, diagnostics = dissect_bytes(tag_bytes(frame_bytes('CHAP', chap_payload)))
    chapter = tag.frames[0].content
    self.assertIsInstance(chapter, ChapterContent)
    inner, = chapter.frames
    self.assertEqual(inner.frame_id, 'CHAP')
    self.assertIsInstance(inner.content, BinaryContent)
    self.assertEqual(inner.content.data, inner_payload)
    self.assertEqual(
        [(depth, frame.frame_id) for depth, frame in tag.walk()],
        [(0, 'CHAP'), (1, 'CHAP')],
    )
    self.assertEqual(
        [(diag.severity, diag.category) for diag in diagnostics],
        [(Severity.INFO, 'UnknownType')],
    )

  def test05format_ms(self):
    self.assertEqual(format_ms(3723004), '01:02:03.004')

def selftest(argv):
  ''' Run the unit tests.
  '''
  setup_logging(__file__)
  unittest.main(__name__, None, argv, failfast=True)

if __name__ == '__main__':
  selftest(sys.argv)
