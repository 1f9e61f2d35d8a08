#!/usr/bin/env python3

''' Dissection of the binary metadata in media files
    for diagnosing malformed, oversized or nonstandard files:
    ID3v2.3 and ID3v2.4 tags including Chapter Addendum frames,
    and ISO Base Media File Format box trees (MP4, MOV, M4A, 3GP)
    including iTunes metadata.

    The command `python -m mediadissect scan` reports the frames
    or boxes of media files:

        Usage: mediadissect subcommand [options...]
          Subcommands:
            probe paths...
              Report the detected format of each media file.
            scan [--header-only] [--data-only] [--raw] paths...
              Report the ID3v2 frames or ISOBMFF boxes of each media file.

    The programmatic entry point is `mediadissect.dissect.dissect()`.
'''

__version__ = '20261018'
