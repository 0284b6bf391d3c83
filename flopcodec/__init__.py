from .flopcodec import *
from .flopcodec import __all__
