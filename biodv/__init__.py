"""The biodv package.

Tools to manage biodiversity data, mainly a local taxonomy stored as flat stanza
files, kept consistent with external taxonomies such as the GBIF backbone.
"""  # noqa D415

from biodv.version import __version__  # noqa: F401
