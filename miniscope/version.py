MINISCOPE_VERSION = '0.4.0'     # version of the package
