#!/usr/bin/env python3
#
# ISOBMFF box tree dissector.
#

''' A bounds safe dissector for the box structure of
    ISO Base Media File Format (ISO14496-12) data, the basis of MP4.

    Unlike `cs.iso14496`, which parses complete `Box` instances from
    a stream, this module walks an in memory buffer by absolute offset
    and emits what it finds to a `BoxReporter`.
    It is intended for sniffing and summarising possibly damaged
    or hostile payloads: it never reads outside the supplied buffer,
    always terminates, and reports as much structure as it can
    before giving up on a malformed region.

    Only the basic box structure is supported:
    no 64 bit sizes, no size 0 "to end of file" boxes
    and no `uuid` extended box types.
    The container boxes are recursed into,
    the `ftyp`, `mvhd` and `mfhd` bodies are decoded into fields
    and all other boxes are reported as opaque spans.

    Example:

        >>> reporter = TreeReporter()
        >>> dissect(bytes.fromhex('000000146674797069736f6d0000020069736f32'), reporter)
        20
        >>> reporter.field_values('mp4.ftyp.additional_brand')
        ['iso2']
'''

from abc import ABC, abstractmethod
from collections import namedtuple
from getopt import GetoptError
import sys
from types import MappingProxyType
from typing import Callable, Iterable, List, Optional, Tuple, Union

from icontract import require
from typeguard import typechecked

from cs.binary import BinaryStruct, UInt32BE
from cs.cmdutils import BaseCommand
from cs.lex import cropped_repr, printt
from cs.logutils import debug, warning
from cs.pfx import Pfx, pfx_call
from cs.threads import ThreadState

__version__ = '20261019'

DISTINFO = {
    'keywords': ["python3"],
    'classifiers': [
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Topic :: Multimedia :: Video",
    ],
    'install_requires': [
        'cs.binary',
        'cs.cmdutils',
        'cs.lex',
        'cs.logutils',
        'cs.pfx',
        'cs.threads',
        'icontract',
        'typeguard',
    ],
    'entry_points': {
        'console_scripts': ['isobmff = cs.isobmff:main'],
    },
}

BytesLike = Union[bytes, bytearray, memoryview]

# a box must at least have a 32 bit size and a 32 bit type
MIN_BOX_LEN = 8

# default limit on container nesting
MAX_DEPTH = 64

PARSE_MODE = ThreadState(max_depth=MAX_DEPTH)

PROTOCOL_NAME = 'MP4 / ISOBMFF file format'
PROTOCOL_SHORT_NAME = 'MP4'
PROTOCOL_FILTER_NAME = 'mp4'

def main(argv=None):
  ''' Command line mode.
  '''
  return ISOBMFFCommand(argv).run()

class DissectionError(ValueError):
  ''' Base class for local, recoverable decode failures.
      The `.offset` attribute is the buffer offset of the failed read.
  '''

  def __init__(self, offset, message):
    super().__init__(f'offset {offset}: {message}')
    self.offset = offset

class TruncatedHeader(DissectionError):
  ''' Fewer than 8 bytes remain for a box header.
  '''

class BoxTooSmall(DissectionError):
  ''' The declared box size cannot contain its own header.
  '''

class PayloadOverrun(DissectionError):
  ''' A fixed field read would pass the end of the box payload.
  '''

@require(lambda box_type: len(box_type) == 4)
def box_type_code(box_type: bytes) -> int:
  ''' Return the 32 bit dispatch code for a 4 byte box type,
      the big endian integer value of the tag bytes.
  '''
  return UInt32BE.from_bytes(bytes(box_type)).value

def printable_tag(bs) -> str:
  ''' Return a display string for the raw tag bytes `bs`.

      If the bytes are all printable ASCII return that text,
      otherwise the `repr()` of the bytes.
  '''
  bs = bytes(bs)
  try:
    s = bs.decode('ascii')
  except UnicodeDecodeError:
    return repr(bs)
  if not all(c.isprintable() for c in s):
    return repr(bs)
  return s

BoxHeaderStruct = BinaryStruct('BoxHeaderStruct', '>L4s', 'box_size box_type')

class Box(namedtuple('Box', 'offset size box_type')):
  ''' A box header located in a buffer:
      * `offset`: the offset of the header within the buffer
      * `size`: the declared box size, including the 8 byte header
      * `box_type`: the 4 raw type bytes
  '''

  @property
  def type_code(self) -> int:
    ''' The 32 bit code of the box type, used for dispatch.
    '''
    return box_type_code(self.box_type)

  @property
  def box_type_s(self) -> str:
    ''' The box type for display.
    '''
    return printable_tag(self.box_type)

  @property
  def end_offset(self) -> int:
    ''' The declared end of the box, which may lie beyond the buffer.
    '''
    return self.offset + self.size

  @property
  def payload_offset(self) -> int:
    return self.offset + MIN_BOX_LEN

  @property
  def payload_length(self) -> int:
    return self.size - MIN_BOX_LEN

  @property
  def payload_range(self) -> Tuple[int, int]:
    return self.payload_offset, self.end_offset

  def __str__(self):
    return f'{self.box_type_s}@{self.offset}[{self.size}]'

@require(lambda offset: offset >= 0)
def read_box_header(bs: BytesLike, offset=0, end_offset=None) -> Box:
  ''' Read the 8 byte box header from `bs` at `offset`, return a `Box`.

      Parameters:
      * `bs`: the buffer
      * `offset`: the offset of the header
      * `end_offset`: optional limit for the header read,
        default `len(bs)`

      Raises `TruncatedHeader` if the header would extend past `end_offset`
      and `BoxTooSmall` if the declared size is less than `MIN_BOX_LEN`.
      The box payload is not checked against the buffer;
      that is the caller's concern.
  '''
  if end_offset is None or end_offset > len(bs):
    end_offset = len(bs)
  if offset + MIN_BOX_LEN > end_offset:
    raise TruncatedHeader(
        offset,
        f'need {MIN_BOX_LEN} bytes for a box header, only {max(end_offset - offset, 0)} available',
    )
  header, _ = BoxHeaderStruct.parse_bytes(
      bs, offset=offset, length=MIN_BOX_LEN
  )
  if header.box_size < MIN_BOX_LEN:
    raise BoxTooSmall(
        offset,
        f'box {printable_tag(header.box_type)} size {header.box_size} < {MIN_BOX_LEN}',
    )
  return Box(offset=offset, size=header.box_size, box_type=header.box_type)

CONTAINER = 'container'
LEAF = 'leaf'
OPAQUE = 'opaque'

BoxTypeInfo = namedtuple('BoxTypeInfo', 'name kind')

# parent_type of a top level box
BOX_TYPE_NONE = 0

BOX_TYPES = MappingProxyType(
    {
        box_type_code(box_type): BoxTypeInfo(name, kind)
        for box_type, name, kind in (
            (b'ftyp', 'File Type Box', LEAF),
            (b'mfhd', 'Movie Fragment Header Box', LEAF),
            (b'mvhd', 'Movie Header Box', LEAF),
            (b'moov', 'Movie Box', CONTAINER),
            (b'moof', 'Movie Fragment Box', CONTAINER),
            (b'stbl', 'Sample Table Box', CONTAINER),
            (b'mdia', 'Media Box', CONTAINER),
            (b'trak', 'Track Box', CONTAINER),
            (b'traf', 'Track Fragment Box', CONTAINER),
            (b'minf', 'Media Information Box', CONTAINER),
            (b'mvex', 'Movie Extends Box', CONTAINER),
            (b'mehd', 'Movie Extends Header Box', OPAQUE),
            (b'trex', 'Track Extends Box', OPAQUE),
        )
    }
)

def box_type_info(type_code: int) -> Optional[BoxTypeInfo]:
  ''' Return the `BoxTypeInfo` for `type_code` or `None` if unknown.
  '''
  return BOX_TYPES.get(type_code)

FieldSpec = namedtuple('FieldSpec', 'name abbrev field_type')

F_BOX_SIZE = FieldSpec('Box size', 'mp4.box.size', 'uint32')
F_BOX_TYPE = FieldSpec('Box type', 'mp4.box.type_str', 'string')
F_FULL_BOX_VERSION = FieldSpec('Box version', 'mp4.full_box.version', 'uint8')
F_FTYP_BRAND = FieldSpec('Brand', 'mp4.ftyp.brand', 'string')
F_FTYP_VERSION = FieldSpec('Version', 'mp4.ftyp.version', 'uint32')
F_FTYP_ADD_BRAND = FieldSpec(
    'Additional brand', 'mp4.ftyp.additional_brand', 'string'
)
F_MFHD_SEQ_NUM = FieldSpec(
    'Sequence number', 'mp4.mfhd.sequence_number', 'uint32'
)

FIELDS = MappingProxyType(
    {
        field.abbrev: field
        for field in (
            F_BOX_SIZE,
            F_BOX_TYPE,
            F_FULL_BOX_VERSION,
            F_FTYP_BRAND,
            F_FTYP_VERSION,
            F_FTYP_ADD_BRAND,
            F_MFHD_SEQ_NUM,
        )
    }
)

class BoxReporter(ABC):
  ''' The sink for dissected structure.

      The dissector only ever writes to a reporter, in pre-order:
      a box's subtree is opened before its fields and children are added,
      and siblings are reported in buffer order.
  '''

  @abstractmethod
  def subtree(self, label: str, offset: int, length: int) -> "BoxReporter":
    ''' Open a named structural node over `length` bytes at `offset`
        and return a reporter for its contents.
    '''
    raise NotImplementedError

  @abstractmethod
  def add_field(self, field: FieldSpec, value, offset: int, length: int):
    ''' Record the scalar `value` of `field`,
        decoded from `length` bytes at `offset`.
    '''
    raise NotImplementedError

  @abstractmethod
  def set_summary(self, protocol: str, info: str = ''):
    ''' Set the protocol name and summary text.
    '''
    raise NotImplementedError

ReportedField = namedtuple('ReportedField', 'field value offset length')

class TreeReporter(BoxReporter):
  ''' A `BoxReporter` which records the reported structure in memory
      as a tree of `TreeReporter` nodes.
  '''

  def __init__(self, label=None, offset=0, length=0, parent=None):
    self.label = label
    self.offset = offset
    self.length = length
    self.parent = parent
    self.fields = []
    self.children = []
    self.protocol = None
    self.info = None

  def __str__(self):
    return f'{self.__class__.__name__}({self.label!r}@{self.offset}[{self.length}])'

  __repr__ = __str__

  def subtree(self, label, offset, length):
    node = type(self)(label, offset, length, parent=self)
    self.children.append(node)
    return node

  def add_field(self, field, value, offset, length):
    self.fields.append(ReportedField(field, value, offset, length))

  def set_summary(self, protocol, info=''):
    root = self
    while root.parent is not None:
      root = root.parent
    root.protocol = protocol
    root.info = info

  def walk(self, level=0) -> Iterable[Tuple[int, "TreeReporter"]]:
    ''' Yield `(level,node)` for this node and its descendants in pre-order.
    '''
    yield level, self
    for child in self.children:
      yield from child.walk(level + 1)

  def field_values(self, abbrev: str) -> List:
    ''' Return the values of all fields named `abbrev`
        in this node and its descendants, in reporting order.
    '''
    return [
        rfield.value
        for _, node in self.walk()
        for rfield in node.fields
        if rfield.field.abbrev == abbrev
    ]

  def dump_table(
      self,
      table=None,
      indent='',
      subindent='  ',
      dump_fields=True,
  ) -> List[Tuple[str, str]]:
    ''' Dump this tree as a table of descriptions.
        Return a list of `(title,description)` 2-tuples
        suitable for use with `cs.lex.printt()`.
        The unlabelled root node is omitted.
    '''
    if table is None:
      table = []
    if self.protocol is not None:
      table.append((f'{indent}Protocol', f'{self.protocol} {self.info or ""}'.rstrip()))
    for level, node in self.walk():
      if node.label is None:
        continue
      row_indent = indent + subindent * (level - 1)
      table.append(
          (
              f'{row_indent}{node.label}',
              f'offset={node.offset} length={node.length}',
          )
      )
      if dump_fields:
        for rfield in node.fields:
          table.append(
              (
                  f'{row_indent}{subindent}{rfield.field.name}',
                  cropped_repr(rfield.value),
              )
          )
    return table

  def dump(self, file=None, **dump_table_kw):
    ''' Dump this tree to `file` (default `sys.stdout` per `cs.lex.printt`).
        Other keyword parameters are passed to `TreeReporter.dump_table`.
    '''
    printt(*self.dump_table(**dump_table_kw), file=file)

FullBoxPrefix = BinaryStruct('FullBoxPrefix', '>B3x', 'version')
FTYPPrefix = BinaryStruct('FTYPPrefix', '>4sL', 'major_brand minor_version')
Brand = BinaryStruct('Brand', '>4s', 'brand')
SequenceNumber = BinaryStruct('SequenceNumber', '>L', 'sequence_number')

FULL_BOX_PREFIX_LEN = 4

def parse_payload_field(binary_cls, length, bs, offset, end_offset):
  ''' Parse an instance of `binary_cls` from `length` bytes of `bs` at `offset`.
      Raise `PayloadOverrun` if that would read past `end_offset`.
  '''
  if offset + length > end_offset:
    raise PayloadOverrun(
        offset,
        f'{binary_cls.__name__} needs {length} bytes, only {end_offset - offset} remain in the box',
    )
  instance, _ = binary_cls.parse_bytes(bs, offset=offset, length=length)
  return instance

def decode_full_box_prefix(bs, offset, end_offset, reporter) -> int:
  ''' Decode the version and flags prefix of a full box.
      Only the version is reported.
  '''
  prefix = parse_payload_field(
      FullBoxPrefix, FULL_BOX_PREFIX_LEN, bs, offset, end_offset
  )
  reporter.add_field(F_FULL_BOX_VERSION, prefix.version, offset, 1)
  return FULL_BOX_PREFIX_LEN

def decode_ftyp_body(bs, payload_offset, payload_length, reporter) -> int:
  ''' Decode an 'ftyp' File Type box body - ISO14496 section 4.3.
      Return the number of bytes consumed.

      A trailing remainder shorter than a brand is not decoded.
  '''
  end_offset = payload_offset + payload_length
  offset = payload_offset
  prefix = parse_payload_field(FTYPPrefix, 8, bs, offset, end_offset)
  reporter.add_field(
      F_FTYP_BRAND, printable_tag(prefix.major_brand), offset, 4
  )
  reporter.add_field(F_FTYP_VERSION, prefix.minor_version, offset + 4, 4)
  offset += 8
  while offset + 4 <= end_offset:
    brand = parse_payload_field(Brand, 4, bs, offset, end_offset)
    reporter.add_field(F_FTYP_ADD_BRAND, printable_tag(brand.brand), offset, 4)
    offset += 4
  if offset < end_offset:
    debug("ignoring %d trailing bytes after the brands", end_offset - offset)
  return offset - payload_offset

def decode_mvhd_body(bs, payload_offset, payload_length, reporter) -> int:
  ''' Decode the full box prefix of an 'mvhd' Movie Header box body.
  '''
  return decode_full_box_prefix(
      bs, payload_offset, payload_offset + payload_length, reporter
  )

def decode_mfhd_body(bs, payload_offset, payload_length, reporter) -> int:
  ''' Decode an 'mfhd' Movie Fragment Header box body:
      the full box prefix and the fragment sequence number.
  '''
  end_offset = payload_offset + payload_length
  offset = payload_offset
  offset += decode_full_box_prefix(bs, offset, end_offset, reporter)
  seq = parse_payload_field(SequenceNumber, 4, bs, offset, end_offset)
  reporter.add_field(F_MFHD_SEQ_NUM, seq.sequence_number, offset, 4)
  offset += 4
  return offset - payload_offset

LEAF_DECODERS = MappingProxyType(
    {
        box_type_code(b'ftyp'): decode_ftyp_body,
        box_type_code(b'mvhd'): decode_mvhd_body,
        box_type_code(b'mfhd'): decode_mfhd_body,
    }
)

def box_label(box: Box) -> str:
  ''' The reporting label for `box`: its type name and its tag.
  '''
  info = box_type_info(box.type_code)
  name = 'unknown' if info is None else info.name
  return f'{name} ({box.box_type_s})'

# pylint: disable=too-many-arguments
@require(lambda start_offset: start_offset >= 0)
def walk(
    parent_type: int,
    bs: BytesLike,
    start_offset: int,
    end_offset: int,
    reporter: BoxReporter,
    *,
    depth=0,
) -> int:
  ''' Walk the sequence of sibling boxes in `bs[start_offset:end_offset]`,
      reporting each to `reporter` and recursing into container boxes.
      Return the offset where the walk stopped.

      Each box is positioned by the declared size of its predecessor,
      regardless of what was decoded inside the predecessor.
      A malformed header ends the walk at that header;
      the boxes already reported stand.
      A box which claims more than the remaining extent
      is reported and decoded only up to `end_offset`.
  '''
  end_offset = min(end_offset, len(bs))
  max_depth = PARSE_MODE.max_depth
  offset = start_offset
  while offset < end_offset:
    try:
      box = read_box_header(bs, offset, end_offset)
    except DissectionError as e:
      warning("walk stopped: %s", e)
      break
    box_end = min(box.end_offset, end_offset)
    if box.end_offset > end_offset:
      debug(
          "%s overruns its extent ending at %d, clipping", box, end_offset
      )
    box_reporter = reporter.subtree(
        box_label(box), box.offset, box_end - box.offset
    )
    box_reporter.add_field(F_BOX_SIZE, box.size, box.offset, 4)
    box_reporter.add_field(F_BOX_TYPE, box.box_type_s, box.offset + 4, 4)
    with Pfx("%s@%d", box.box_type_s, box.offset):
      info = box_type_info(box.type_code)
      if info is None or info.kind == OPAQUE:
        pass
      elif info.kind == CONTAINER:
        if depth >= max_depth:
          warning(
              "nesting depth %d reached, not descending into %s", depth, box
          )
        else:
          debug("container in parent type 0x%08x", parent_type)
          walk(
              box.type_code,
              bs,
              box.payload_offset,
              box_end,
              box_reporter,
              depth=depth + 1,
          )
      elif info.kind == LEAF:
        decoder = LEAF_DECODERS[box.type_code]
        try:
          consumed = decoder(
              bs, box.payload_offset, box_end - box.payload_offset,
              box_reporter
          )
        except PayloadOverrun as e:
          warning("incomplete body: %s", e)
        else:
          if consumed != box.payload_length:
            debug(
                "decoded %d of %d payload bytes", consumed,
                box.payload_length
            )
      else:
        raise RuntimeError(f'unhandled box kind {info.kind!r}')
    offset = box.end_offset
  return min(offset, end_offset)

def sniff(bs: BytesLike) -> bool:
  ''' Test whether `bs` looks like ISOBMFF data:
      it must hold at least one box header
      and the first box must be of a known type.
  '''
  if len(bs) < MIN_BOX_LEN:
    return False
  return box_type_info(box_type_code(bytes(bs[4:8]))) is not None

@typechecked
def dissect(bs: BytesLike, reporter: BoxReporter) -> int:
  ''' Dissect the ISOBMFF data in `bs`, reporting to `reporter`.
      Return the number of bytes consumed.

      If `bs` does not look like ISOBMFF data (see `sniff`)
      nothing is reported and `0` is returned,
      allowing the caller to try some other dissector.
      Malformed data ends the dissection early
      but never raises an exception.
  '''
  if not sniff(bs):
    return 0
  reporter.set_summary(PROTOCOL_SHORT_NAME, '')
  proto_reporter = reporter.subtree(PROTOCOL_SHORT_NAME, 0, len(bs))
  offset = 0
  while offset < len(bs):
    next_offset = walk(BOX_TYPE_NONE, bs, offset, len(bs), proto_reporter)
    if next_offset <= offset:
      break
    offset = next_offset
    if offset < len(bs):
      # walk only stops short of the end at a malformed header
      break
  return offset

MEDIA_TYPE_DISSECTORS = MappingProxyType({
    'video/mp4': dissect,
})

def dissector_for_media_type(media_type: str) -> Optional[Callable]:
  ''' Return the dissector for the MIME type `media_type`, or `None`.
      Parameters such as `; codecs=...` are ignored.
  '''
  base_type = media_type.split(';', 1)[0].strip().lower()
  return MEDIA_TYPE_DISSECTORS.get(base_type)

def dissect_media(media_type: str, bs: BytesLike, reporter: BoxReporter) -> int:
  ''' Dissect `bs` if there is a dissector for `media_type`.
      Return the number of bytes consumed, `0` if declined.
  '''
  dissector = dissector_for_media_type(media_type)
  if dissector is None:
    debug("no dissector for media type %r", media_type)
    return 0
  return dissector(bs, reporter)

class ISOBMFFCommand(BaseCommand):
  ''' Command line access to the ISOBMFF dissector.
  '''

  GETOPT_SPEC = ''

  @staticmethod
  def read_source(filespec):
    ''' Return the bytes of `filespec`, or of standard input for `"-"`.
    '''
    if filespec == '-':
      return sys.stdin.buffer.read()
    with pfx_call(open, filespec, 'rb') as f:
      return f.read()

  def cmd_scan(self, argv):
    ''' Usage: {cmd} [-F] [{{-|filename}}...]
          Dissect the named files (or stdin for "-") and print the box tree.
          -F  Do not print the decoded fields.
    '''
    dump_fields = True
    if argv and argv[0] == '-F':
      argv.pop(0)
      dump_fields = False
    if argv and argv[0].startswith('-') and argv[0] != '-':
      raise GetoptError(f'unrecognised option: {argv[0]!r}')
    if not argv:
      argv = ['-']
    xit = 0
    first = True
    for filespec in argv:
      with Pfx(filespec):
        try:
          bs = self.read_source(filespec)
        except OSError as e:
          warning("cannot read: %s", e)
          xit = 1
          continue
        if first:
          first = False
        else:
          print()
        print(filespec)
        reporter = TreeReporter()
        consumed = dissect(bs, reporter)
        if consumed == 0:
          warning("not recognised as ISOBMFF data")
          xit = 1
          continue
        printt(*reporter.dump_table(indent='  ', dump_fields=dump_fields))
        if consumed < len(bs):
          warning("dissected %d of %d bytes", consumed, len(bs))
    return xit

  def cmd_sniff(self, argv):
    ''' Usage: {cmd} filenames...
          Report whether each file looks like ISOBMFF data.
    '''
    if not argv:
      raise GetoptError("missing filenames")
    xit = 0
    for filespec in argv:
      with Pfx(filespec):
        try:
          bs = self.read_source(filespec)
        except OSError as e:
          warning("cannot read: %s", e)
          xit = 1
          continue
        print(
            filespec + ':', PROTOCOL_SHORT_NAME
            if sniff(bs) else f'not {PROTOCOL_SHORT_NAME}'
        )
    return xit

  def cmd_test(self, argv):
    ''' Usage: {cmd} [testnames...]
          Run self tests.
    '''
    from .isobmff_tests import selftest  # pylint: disable=import-outside-toplevel
    selftest([self.options.cmd] + argv)

if __name__ == '__main__':
  sys.exit(main(sys.argv))
