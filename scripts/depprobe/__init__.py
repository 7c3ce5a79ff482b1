"""depprobe - empirical dependency discovery for an Arduino library catalog.

Instead of trusting what libraries declare, each library is probed with a
minimal sketch built by the real toolchain, and the libraries that build
pulls in are written back to the catalog's ``requires`` field.

Usage:
    python -m scripts.depprobe.cli --json library_index.json \\
        --hardware /opt/arduino/hardware --tools /opt/arduino/tools-builder \\
        --built-in-libraries /opt/arduino/libraries --libraries ~/Arduino/libraries
"""

__version__ = "1.0.0"
