"""
Media remuxer package.

Pure Python ISO-BMFF helpers used after the Muxer has written its segments:

- box_editor: box tree parsing, path addressing and size-consistent box removal
- mp4_muxer: box builders for stpp subtitle init/media segments and pssh boxes
"""
