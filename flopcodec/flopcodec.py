#
# Exact conversion between decimal values and IEEE-754 style binary layouts of arbitrary
# exponent and significand width
#
# (c) Neil Booth 2007-2021.  All rights reserved.
#

import json
import logging
import re
import threading
from collections import namedtuple
from decimal import Decimal
from enum import Enum
from fractions import Fraction
from math import copysign, isinf, isnan
from typing import NamedTuple

import attr

__all__ = ('Context', 'DefaultContext', 'get_context', 'set_context', 'local_context',
           'TextFormat', 'DefaultTextFormat',
           'CodecError', 'InvalidFormat', 'MalformedInput', 'UnrepresentableInput',
           'Classification', 'RawFields', 'FloatFormat', 'BitLayout', 'DecodedValue',
           'LayoutRange', 'Conversion',
           'classify', 'decode', 'decode_hex', 'decode_bit_string', 'encode', 'convert',
           'exact_fraction', 'enumerate_layouts', 'reference_table', 'dumps_reference_table',
           'ROUND_CEILING', 'ROUND_FLOOR', 'ROUND_DOWN', 'ROUND_UP',
           'ROUND_HALF_EVEN', 'ROUND_HALF_UP', 'ROUND_HALF_DOWN',
           'OP_FORMAT', 'OP_LAYOUT', 'OP_FROM_HEX', 'OP_FROM_BIT_STRING', 'OP_FROM_BYTES',
           'OP_PACK', 'OP_UNPACK', 'OP_ENCODE',
           'FP16', 'BF16', 'TF32', 'FP32', 'FP64')


logger = logging.getLogger(__name__)


# Rounding modes
ROUND_CEILING   = 'ROUND_CEILING'       # Towards +infinity
ROUND_FLOOR     = 'ROUND_FLOOR'         # Towards -infinity
ROUND_DOWN      = 'ROUND_DOWN'          # Towards zero
ROUND_UP        = 'ROUND_UP'            # Away from zero
ROUND_HALF_EVEN = 'ROUND_HALF_EVEN'     # To nearest with ties towards even
ROUND_HALF_DOWN = 'ROUND_HALF_DOWN'     # To nearest with ties towards zero
ROUND_HALF_UP   = 'ROUND_HALF_UP'       # To nearest with ties away from zero

all_roundings = frozenset((ROUND_CEILING, ROUND_FLOOR, ROUND_DOWN, ROUND_UP,
                           ROUND_HALF_EVEN, ROUND_HALF_DOWN, ROUND_HALF_UP))


# Operation names
OP_FORMAT = 'format'
OP_LAYOUT = 'layout'
OP_FROM_HEX = 'from_hex'
OP_FROM_BIT_STRING = 'from_bit_string'
OP_FROM_BYTES = 'from_bytes'
OP_PACK = 'pack'
OP_UNPACK = 'unpack'
OP_ENCODE = 'encode'


# Kinds of parsed input
KIND_FINITE = 'finite'
KIND_INFINITY = 'infinity'
KIND_NAN = 'nan'


# Exponent and significand widths of the named formats.  Several spellings are accepted
# for some.
PRESET_WIDTHS = {
    'FP16': (5, 10),
    'BF16': (8, 7),
    'TF32': (8, 10),
    'FP32': (8, 23),
    'FP64': (11, 52),
}
PRESET_ALIASES = {
    'HALF': 'FP16',
    'BFLOAT16': 'BF16',
    'TENSORFLOAT-32': 'TF32',
    'TENSORFLOAT32': 'TF32',
    'SINGLE': 'FP32',
    'DOUBLE': 'FP64',
}
preset_names = {widths: name for name, widths in PRESET_WIDTHS.items()}


class Classification(Enum):
    '''The five kinds of value a bit pattern can denote.'''
    ZERO = 'ZERO'
    SUBNORMAL = 'SUBNORMAL'
    NORMAL = 'NORMAL'
    INFINITY = 'INFINITY'
    NAN = 'NAN'

    def is_finite(self):
        return self in (Classification.ZERO, Classification.SUBNORMAL, Classification.NORMAL)


# The three fields of an encoding.  sign is 0 or 1; the exponent field is biased and the
# significand field excludes the implicit integer bit.
RawFields = namedtuple('RawFields', 'sign exponent_field significand_field')

ParsedNumber = namedtuple('ParsedNumber', 'sign kind significand exponent radix')

Conversion = namedtuple('Conversion', 'source layout decoded error')


@attr.s(slots=True, kw_only=True, eq=False)
class TextFormat:
    '''Controls the output of decoded values as decimal strings.'''

    # The maximum number of digits output after the decimal point.  Further digits are
    # truncated, and trailing zeroes are always stripped.  If None the exact expansion is
    # output; it always terminates as every finite value has a power-of-two denominator.
    precision = attr.ib(default=32)
    # If True, output one digit before the point and a decimal exponent, e.g. 1.5e-3.  The
    # digits are those of the plain output, so precision still counts digits after the
    # point of the plain form.
    scientific = attr.ib(default=False)
    # If True, values with a clear sign bit are preceded with a '+'.
    force_leading_sign = attr.ib(default=False)
    # The string output for infinity
    inf = attr.ib(default='Infinity')
    # The string output for NaNs
    nan = attr.ib(default='NaN')

    def leading_sign(self, sign):
        '''Return the leading sign string.'''
        return '-' if sign else '+' if self.force_leading_sign else ''

    def format_fraction(self, sign, value):
        '''Return the text of a finite value whose sign is given separately so that negative
        zeroes are output as such.'''
        value = abs(value)
        integer, remainder = divmod(value.numerator, value.denominator)
        digits = []
        while remainder and (self.precision is None or len(digits) < self.precision):
            digit, remainder = divmod(remainder * 10, value.denominator)
            digits.append(str(digit))
        fraction = ''.join(digits).rstrip('0')

        if self.scientific:
            text = self._scientific(str(integer), fraction)
        elif fraction:
            text = f'{integer}.{fraction}'
        else:
            text = str(integer)
        return self.leading_sign(sign) + text

    @staticmethod
    def _scientific(int_str, fraction):
        if int_str != '0':
            exponent = len(int_str) - 1
            digits = (int_str + fraction).rstrip('0')
        elif fraction:
            stripped = fraction.lstrip('0')
            exponent = len(stripped) - len(fraction) - 1
            digits = stripped
        else:
            return '0'
        if len(digits) > 1:
            return f'{digits[0]}.{digits[1:]}e{exponent:+d}'
        return f'{digits}e{exponent:+d}'


DefaultTextFormat = TextFormat()


#
# Errors
#

class CodecError(ValueError):
    '''All errors raised by this module subclass from this.

    CodecError expects two arguments:

         def __init__(self, op_tuple, message):

    op_tuple is a tuple of the operation name and the operands that caused the error.
    message describes the problem.  Overflow and underflow when encoding are not errors;
    they deliver infinities, zeroes or extreme finite values according to the rounding
    mode.
    '''

    @property
    def op_tuple(self):
        return self.args[0]

    @property
    def message(self):
        return self.args[1]

    def __str__(self):
        return self.message


class InvalidFormat(CodecError):
    '''The exponent or significand widths do not describe a usable format, or the name of a
    preset is unknown.'''


class MalformedInput(CodecError):
    '''Text, bytes or an integer that does not form a bit pattern of the required width, or
    a string that is not a number.'''


class UnrepresentableInput(CodecError):
    '''The input is well-formed but denotes something that cannot be encoded, for example a
    NaN when the context does not accept non-finite input or the format has no NaNs.'''


#
# Configuration
#

@attr.s(slots=True, kw_only=True, eq=False)
class Context:
    '''Tunables consulted by the codec.  The codec itself never modifies a context.'''

    # The rounding mode applied when encoding inexact values
    rounding = attr.ib(default=ROUND_HALF_EVEN)
    # If True, infinities and NaNs can be encoded.  If False, requesting so raises
    # UnrepresentableInput.
    non_finite = attr.ib(default=True)
    # Formats wider than this, in bits, raise InvalidFormat
    max_total_bits = attr.ib(default=4096)
    # The number of bit patterns enumerated by default for formats wider than 16 bits
    sample_limit = attr.ib(default=4096)

    @rounding.validator
    def _check_rounding(self, _attribute, value):
        if value not in all_roundings:
            raise ValueError(f'unknown rounding mode: {value!r}')

    def copy(self):
        '''Return a copy of the context.'''
        return attr.evolve(self)

    def round_to_nearest(self):
        '''Return True if the rounding mode rounds to nearest (ignoring ties).'''
        return self.rounding in {ROUND_HALF_EVEN, ROUND_HALF_DOWN, ROUND_HALF_UP}


# When precision is lost during rounding these indicate what fraction of the LSB the lost
# bits represented.  It essentially combines the roles of 'guard' and 'sticky' bits.
LF_EXACTLY_ZERO = 0           # 000000
LF_LESS_THAN_HALF = 1         # 0xxxxx  x's not all zero
LF_EXACTLY_HALF = 2           # 100000
LF_MORE_THAN_HALF = 3         # 1xxxxx  x's not all zero


class FloatFormat(NamedTuple):
    '''An IEEE-754 style binary layout: a sign bit followed by exponent_width exponent bits
    and significand_width significand bits, most significant bit first.  Only
    instantiate indirectly through the from_widths(), custom() and preset() constructors.

    The exponent field is biased by 2^(exponent_width - 1) - 1.  An exponent field of
    zero denotes zeroes and subnormals, which have no integer bit.  An exponent field of
    all ones denotes infinities (significand field zero) and NaNs.  Every other exponent
    field denotes a normal number whose significand has an implicit leading integer bit.

    Presets and custom formats are the same type and support the same operations.
    '''

    # These two attributes determine the rest, which are pre-calculated for efficiency
    exponent_width: int
    significand_width: int

    # All a function of the two values above
    total_bits: int
    bias: int
    max_exponent_field: int
    int_bit: int
    max_significand_field: int
    hex_digits: int
    name: str

    # The smallest exponent field of a normal number
    min_normal_exponent_field = 1

    @classmethod
    def from_widths(cls, exponent_width, significand_width, context=None):
        '''Make a FloatFormat with pre-calculated values.  All constructors ultimately
        call this one.'''
        widths = (exponent_width, significand_width)
        if not all(isinstance(arg, int) and not isinstance(arg, bool) for arg in widths):
            raise TypeError('exponent_width and significand_width must be integers')
        op_tuple = (OP_FORMAT, exponent_width, significand_width)
        if exponent_width < 1:
            raise InvalidFormat(op_tuple,
                                f'exponent width must be at least 1; got {exponent_width}')
        if significand_width < 0:
            raise InvalidFormat(op_tuple, f'significand width cannot be negative; '
                                f'got {significand_width}')
        context = context or get_context()
        total_bits = 1 + exponent_width + significand_width
        if total_bits > context.max_total_bits:
            raise InvalidFormat(op_tuple, f'a {total_bits}-bit format exceeds the maximum '
                                f'of {context.max_total_bits} bits')

        bias = (1 << (exponent_width - 1)) - 1
        max_exponent_field = (1 << exponent_width) - 1
        int_bit = 1 << significand_width
        hex_digits = (total_bits + 3) // 4
        name = preset_names.get(widths, f'E{exponent_width}M{significand_width}')
        return cls(exponent_width, significand_width, total_bits, bias, max_exponent_field,
                   int_bit, int_bit - 1, hex_digits, name)

    @classmethod
    def custom(cls, exponent_width, significand_width, context=None):
        '''Construct from the specified exponent and significand widths.'''
        return cls.from_widths(exponent_width, significand_width, context)

    @classmethod
    def preset(cls, name):
        '''Return the named standard format: one of FP16, BF16, TF32, FP32 and FP64.'''
        if not isinstance(name, str):
            raise TypeError('preset name must be a string')
        key = name.strip().upper()
        key = PRESET_ALIASES.get(key, key)
        widths = PRESET_WIDTHS.get(key)
        if widths is None:
            raise InvalidFormat((OP_FORMAT, name), f'unknown format {name!r}')
        # Presets are always narrow enough; don't let a context veto them
        return cls.from_widths(*widths, context=DefaultContext)

    @property
    def e_max(self):
        '''The unbiased exponent of the largest finite numbers.'''
        return self.max_exponent_field - 1 - self.bias

    @property
    def e_min(self):
        '''The unbiased exponent of the smallest normal numbers, which subnormals share.'''
        return self.min_normal_exponent_field - self.bias

    def __repr__(self):
        return (f'FloatFormat(exponent_width={self.exponent_width}, '
                f'significand_width={self.significand_width})')

    def __eq__(self, other):
        '''Return True if two formats are equal.'''
        return (isinstance(other, FloatFormat) and
                (self.exponent_width, self.significand_width)
                == (other.exponent_width, other.significand_width))

    def __ne__(self, other):
        return not self == other

    def __hash__(self):
        return hash((self.exponent_width, self.significand_width))

    def make_zero(self, sign):
        '''Return the fields of a zero of the given sign.'''
        return RawFields(sign, 0, 0)

    def make_infinity(self, sign):
        '''Return the fields of an infinity of the given sign.'''
        return RawFields(sign, self.max_exponent_field, 0)

    def make_nan(self, sign):
        '''Return the fields of the canonical quiet NaN, which has only the most significant
        significand bit set.'''
        if not self.significand_width:
            raise UnrepresentableInput((OP_ENCODE, 'nan'),
                                       f'{self.name} has no significand bits to encode a NaN')
        return RawFields(sign, self.max_exponent_field, self.int_bit >> 1)

    def make_largest_finite(self, sign):
        '''Return the fields of the finite number of maximal magnitude with the given sign.'''
        return RawFields(sign, self.max_exponent_field - 1, self.max_significand_field)

    def make_smallest_nonzero(self, sign):
        '''Return the fields of the non-zero number of least magnitude with the given sign.
        This is the smallest subnormal if there are any.'''
        if self.significand_width:
            return RawFields(sign, 0, 1)
        if self.max_exponent_field > self.min_normal_exponent_field:
            return RawFields(sign, self.min_normal_exponent_field, 0)
        # No non-zero finite numbers at all
        return self.make_infinity(sign)

    def make_overflow_value(self, rounding, sign):
        '''Return the fields to deliver when encoding a value whose exponent is too large,
        with the given sign.  rounding is the rounding mode to apply.'''
        if round_up(rounding, LF_MORE_THAN_HALF, sign, False):
            return self.make_infinity(sign)
        return self.make_largest_finite(sign)

    def make_underflow_value(self, rounding, sign):
        '''Return the fields to deliver when encoding a non-zero value known to be less than
        half the smallest subnormal, with the given sign.  rounding is the rounding mode to
        apply.'''
        if round_up(rounding, LF_LESS_THAN_HALF, sign, False):
            return self.make_smallest_nonzero(sign)
        return self.make_zero(sign)

    def overflows(self, low, margin=0):
        '''Return True if every value of at least 2^low overflows this format, and does so
        by more than margin binades.'''
        return low >= self.e_max + 2 + margin

    def underflows(self, high, margin=0):
        '''Return True if every value below 2^high is less than half the smallest subnormal,
        and is so by more than margin binades.'''
        return high <= self.e_min - self.significand_width - 2 - margin

    def pack(self, sign, exponent_field, significand_field):
        '''Pack the three fields of an encoding into a BitLayout.'''
        op_tuple = (OP_PACK, sign, exponent_field, significand_field)
        if sign not in (0, 1):
            raise MalformedInput(op_tuple, f'sign must be 0 or 1; got {sign!r}')
        if not 0 <= exponent_field <= self.max_exponent_field:
            raise MalformedInput(op_tuple, f'exponent field {exponent_field:,d} out of range')
        if not 0 <= significand_field <= self.max_significand_field:
            raise MalformedInput(op_tuple,
                                 f'significand field {significand_field:,d} out of range')
        value = (((int(sign) << self.exponent_width) + exponent_field)
                 << self.significand_width) + significand_field
        return BitLayout(value, self.total_bits)

    def unpack(self, layout):
        '''Split a BitLayout of this format's width into RawFields.'''
        if not isinstance(layout, BitLayout):
            raise TypeError('unpack requires a BitLayout')
        if layout.width != self.total_bits:
            raise MalformedInput((OP_UNPACK, layout), f'expected {self.total_bits} bits to '
                                 f'unpack as {self.name}; got {layout.width}')
        value = layout.value
        significand_field = value & self.max_significand_field
        value >>= self.significand_width
        exponent_field = value & self.max_exponent_field
        sign = value >> self.exponent_width
        return RawFields(sign, exponent_field, significand_field)

    def classify(self, fields):
        '''Return the Classification of the given RawFields.'''
        return classify(fields, self)

    ##
    ## Decoding
    ##

    def decode(self, bits):
        '''Decode a bit pattern of this format, given as a BitLayout or an unsigned integer,
        and return a DecodedValue.'''
        if isinstance(bits, int) and not isinstance(bits, bool):
            bits = BitLayout(bits, self.total_bits)
        fields = self.unpack(bits)
        classification = classify(fields, self)
        value = self.fields_value(fields) if classification.is_finite() else None
        return DecodedValue(self, classification, *fields, value)

    def fields_value(self, fields):
        '''Return the exact value of the fields of a finite number as a Fraction.'''
        sign, exponent_field, significand = fields
        if exponent_field:
            assert exponent_field < self.max_exponent_field
            significand += self.int_bit
        else:
            # Subnormals share the exponent of the smallest normal numbers
            exponent_field = self.min_normal_exponent_field
        exponent = exponent_field - self.bias - self.significand_width
        if exponent >= 0:
            value = Fraction(significand << exponent)
        else:
            value = Fraction(significand, 1 << -exponent)
        return -value if sign else value

    ##
    ## Encoding
    ##

    def encode(self, value, context=None):
        '''Return the BitLayout of value converted to this format, rounding if necessary.
        Values of type int, float, Fraction, Decimal and str are accepted.'''
        return self.pack(*self.encode_fields(value, context))

    def encode_fields(self, value, context=None):
        '''As for encode() but return RawFields.'''
        converter = FloatFormat._converters.get(type(value))
        if not converter:
            raise TypeError(f'cannot encode values of type {type(value).__name__}')
        return converter(self, value, context or get_context())

    def _encode_int(self, value, context):
        return self._normalize(int(value < 0), abs(value), 1, context)

    def _encode_fraction(self, value, context):
        return self._normalize(int(value < 0), abs(value.numerator), value.denominator,
                               context)

    def _encode_float(self, value, context):
        sign = int(copysign(1.0, value) < 0)
        if isnan(value):
            return self._encode_non_finite(KIND_NAN, sign, value, context)
        if isinf(value):
            return self._encode_non_finite(KIND_INFINITY, sign, value, context)
        numerator, denominator = abs(value).as_integer_ratio()
        return self._normalize(sign, numerator, denominator, context)

    def _encode_decimal(self, value, context):
        sign = int(value.is_signed())
        if value.is_nan():
            return self._encode_non_finite(KIND_NAN, sign, value, context)
        if value.is_infinite():
            return self._encode_non_finite(KIND_INFINITY, sign, value, context)
        return self._encode_string(str(value), context)

    def _encode_string(self, string, context):
        sign, kind, significand, exponent, radix = parse_number(string)
        if kind != KIND_FINITE:
            return self._encode_non_finite(kind, sign, string, context)
        if significand == 0:
            return self.make_zero(sign)

        # Settle obvious overflow and underflow from the exponent alone so that absurd
        # exponents never build huge integers.
        low, high = magnitude_bounds(significand, exponent, radix)
        if self.overflows(low):
            logger.debug('%s overflows %s', string, self.name)
            return self.make_overflow_value(context.rounding, sign)
        if self.underflows(high):
            logger.debug('%s underflows %s', string, self.name)
            return self.make_underflow_value(context.rounding, sign)

        if exponent >= 0:
            return self._normalize(sign, significand * radix ** exponent, 1, context)
        return self._normalize(sign, significand, radix ** -exponent, context)

    def _encode_non_finite(self, kind, sign, value, context):
        if not context.non_finite:
            raise UnrepresentableInput((OP_ENCODE, value),
                                       f'cannot encode {value!r}: non-finite input is disabled')
        if kind == KIND_INFINITY:
            return self.make_infinity(sign)
        return self.make_nan(sign)

    def _normalize(self, sign, numerator, denominator, context):
        '''Return the fields of the correctly-rounded (by the context) value of

             (-1)^sign * numerator / denominator

        where numerator is non-negative and denominator positive.
        '''
        if numerator == 0:
            return self.make_zero(sign)

        rounding = context.rounding

        # The binary exponent e with 2^e <= numerator / denominator < 2^(e + 1)
        exponent = numerator.bit_length() - denominator.bit_length()
        if (numerator << max(-exponent, 0)) < (denominator << max(exponent, 0)):
            exponent -= 1

        if exponent > self.e_max:
            logger.debug('exponent %d overflows %s', exponent, self.name)
            return self.make_overflow_value(rounding, sign)
        # Less than half the smallest subnormal?
        if exponent < self.e_min - self.significand_width - 1:
            logger.debug('exponent %d underflows %s', exponent, self.name)
            return self.make_underflow_value(rounding, sign)

        # Scale so that the integer part of the quotient is the significand including its
        # integer bit.  Below the normal range the exponent is pinned at e_min, leaving
        # fewer significant bits.
        exponent = max(exponent, self.e_min)
        scale = exponent - self.significand_width
        if scale >= 0:
            denominator <<= scale
        else:
            numerator <<= -scale
        significand, remainder = divmod(numerator, denominator)

        if round_up(rounding, lost_fraction(remainder, denominator), sign,
                    bool(significand & 1)):
            significand += 1
            # If the significand now overflows, halve it and increment the exponent
            if significand >> (self.significand_width + 1):
                significand >>= 1
                exponent += 1

        if significand < self.int_bit:
            # Subnormal, or rounded to zero
            return RawFields(sign, 0, significand)

        exponent_field = exponent + self.bias
        if exponent_field >= self.max_exponent_field:
            logger.debug('rounding carried into the exponent and overflowed %s', self.name)
            return self.make_overflow_value(rounding, sign)
        return RawFields(sign, exponent_field, significand - self.int_bit)


FloatFormat._converters = {
    int: FloatFormat._encode_int,
    float: FloatFormat._encode_float,
    str: FloatFormat._encode_string,
    Decimal: FloatFormat._encode_decimal,
    Fraction: FloatFormat._encode_fraction,
}


class BitLayout(namedtuple('BitLayout', 'value width')):
    '''A fixed-width bit pattern.  value is the pattern read as an unsigned big-endian
    integer, so bit 0 (the sign bit of an encoding) is the most significant.'''

    def __new__(cls, value, width):
        '''Validate and create a bit pattern of the given width.'''
        if not isinstance(value, int) or isinstance(value, bool):
            raise TypeError('value must be an integer')
        if not isinstance(width, int) or isinstance(width, bool):
            raise TypeError('width must be an integer')
        op_tuple = (OP_LAYOUT, value, width)
        if width < 1:
            raise MalformedInput(op_tuple, f'width must be positive; got {width}')
        if value < 0 or value.bit_length() > width:
            raise MalformedInput(op_tuple, f'{value:,d} does not fit in {width} bits')
        return super().__new__(cls, value, width)

    @classmethod
    def from_hex(cls, string, total_bits):
        '''Parse a hexadecimal string, optionally prefixed with 0x, as a pattern of total_bits
        bits.  Missing leading digits are zero.  Digits that would not fit are rejected
        rather than dropped.'''
        if not isinstance(string, str):
            raise TypeError('from_hex requires a string')
        op_tuple = (OP_FROM_HEX, string, total_bits)
        match = HEX_LAYOUT_REGEX.match(string.strip())
        if match is None:
            raise MalformedInput(op_tuple, f'invalid hexadecimal bit pattern: {string!r}')
        value = int(match.group(1), 16)
        if value.bit_length() > total_bits:
            raise MalformedInput(op_tuple, f'{string!r} does not fit in {total_bits} bits')
        return cls(value, total_bits)

    @classmethod
    def from_bit_string(cls, string, total_bits=None):
        '''Parse a string of 0s and 1s, optionally prefixed with 0b.  If total_bits is given
        the number of digits must equal it.'''
        if not isinstance(string, str):
            raise TypeError('from_bit_string requires a string')
        op_tuple = (OP_FROM_BIT_STRING, string, total_bits)
        match = BIT_STRING_REGEX.match(string.strip())
        if match is None:
            raise MalformedInput(op_tuple, f'invalid bit string: {string!r}')
        digits = match.group(1)
        if total_bits is not None and len(digits) != total_bits:
            raise MalformedInput(op_tuple, f'expected {total_bits} bits; got {len(digits)}')
        return cls(int(digits, 2), len(digits))

    @classmethod
    def from_bytes(cls, raw, total_bits, endianness='big'):
        '''Decode total_bits bits stored in the smallest whole number of bytes.  Unused high
        bits must be zero.'''
        op_tuple = (OP_FROM_BYTES, raw, total_bits)
        size = (total_bits + 7) // 8
        if len(raw) != size:
            raise MalformedInput(op_tuple, f'expected {size} bytes; got {len(raw)}')
        value = int.from_bytes(raw, endianness)
        if value.bit_length() > total_bits:
            raise MalformedInput(op_tuple, f'unused high bits are set for a '
                                 f'{total_bits}-bit pattern')
        return cls(value, total_bits)

    def to_hex(self, upper_case=True):
        '''Return the pattern as hexadecimal digits, zero-padded to ceil(width / 4) digits.'''
        digits = (self.width + 3) // 4
        return f'{self.value:0{digits}{"X" if upper_case else "x"}}'

    def to_bit_string(self):
        '''Return the pattern as exactly width 0s and 1s.'''
        return f'{self.value:0{self.width}b}'

    def to_bytes(self, endianness='big'):
        '''Return the pattern in the smallest whole number of bytes.'''
        return self.value.to_bytes((self.width + 7) // 8, endianness)

    def bits(self):
        '''Return a tuple of the bits, most significant first.'''
        return tuple((self.value >> shift) & 1 for shift in range(self.width - 1, -1, -1))

    def split_fields(self, fmt):
        '''Return the RawFields of this pattern interpreted in format fmt.'''
        return fmt.unpack(self)

    def __int__(self):
        return self.value

    def __str__(self):
        return self.to_hex()


class DecodedValue(namedtuple('DecodedValue', 'fmt classification sign exponent_field '
                              'significand_field value')):
    '''The result of decoding a bit pattern.  value is the exact value as a Fraction for
    zeroes, subnormals and normal numbers, and None for infinities and NaNs.  A negative
    zero has a value of zero and a sign of 1.'''

    @property
    def layout(self):
        return self.fmt.pack(self.sign, self.exponent_field, self.significand_field)

    def fields(self):
        return RawFields(self.sign, self.exponent_field, self.significand_field)

    def is_negative(self):
        '''Return True if the sign bit is set.'''
        return bool(self.sign)

    def is_finite(self):
        return self.classification.is_finite()

    def is_zero(self):
        return self.classification is Classification.ZERO

    def is_subnormal(self):
        return self.classification is Classification.SUBNORMAL

    def is_normal(self):
        return self.classification is Classification.NORMAL

    def is_infinite(self):
        return self.classification is Classification.INFINITY

    def is_nan(self):
        return self.classification is Classification.NAN

    def exponent(self):
        '''Return the arithmetic exponent of the significand interpreted as a binary number
        with a point after its integer bit.  Subnormals and zeroes report e_min.'''
        assert self.is_finite()
        return max(self.exponent_field, self.fmt.min_normal_exponent_field) - self.fmt.bias

    def as_integer_ratio(self):
        '''Return a pair (n, d) of integers that represent the value as a fraction in lowest
        terms and with a positive denominator.'''
        if self.value is None:
            if self.is_nan():
                raise ValueError('cannot convert a NaN to an integer ratio')
            raise OverflowError('cannot convert an infinity to an integer ratio')
        return self.value.numerator, self.value.denominator

    def to_string(self, text_format=None):
        '''Return the value as decimal text.  See the TextFormat docstring for output
        control.'''
        text_format = text_format or DefaultTextFormat
        if self.is_nan():
            return text_format.nan
        if self.is_infinite():
            return text_format.leading_sign(self.sign) + text_format.inf
        return text_format.format_fraction(self.sign, self.value)

    def to_report(self):
        '''Return a JSON-serializable dictionary describing the encoding:

            hex, bits, type, sign, exponent, significand and, for finite values only,
            fraction: {num, den}

        exponent is the raw exponent field.  significand and the parts of the fraction are
        decimal strings so that arbitrarily large values survive JSON.
        '''
        layout = self.layout
        report = {
            'hex': layout.to_hex(upper_case=False),
            'bits': layout.to_bit_string(),
            'type': self.classification.value,
            'sign': int(self.sign),
            'exponent': self.exponent_field,
            'significand': str(self.significand_field),
        }
        if self.value is not None:
            report['fraction'] = {
                'num': str(self.value.numerator),
                'den': str(self.value.denominator),
            }
        return report

    def __str__(self):
        return self.to_string()


@attr.s(slots=True, frozen=True)
class LayoutRange:
    '''A restartable, ascending run of the bit patterns start to stop - 1 of a format.'''

    fmt = attr.ib()
    start = attr.ib()
    stop = attr.ib()

    def __iter__(self):
        width = self.fmt.total_bits
        return (BitLayout(value, width) for value in range(self.start, self.stop))

    def __len__(self):
        return max(self.stop - self.start, 0)

    def decoded(self):
        '''Return an iterator of the DecodedValue of each pattern in order.'''
        decode_layout = self.fmt.decode
        return (decode_layout(layout) for layout in self)

    def split(self, parts):
        '''Return a list of parts contiguous sub-ranges that together cover this range in
        order.  Sub-ranges can be decoded independently, e.g. on separate threads.'''
        if parts < 1:
            raise ValueError('parts must be positive')
        size = len(self)
        bounds = [self.start + size * n // parts for n in range(parts + 1)]
        return [LayoutRange(self.fmt, lo, hi) for lo, hi in zip(bounds, bounds[1:])]


#
# Helper routines
#

def lost_fraction(remainder, divisor):
    '''Return what fraction of an LSB the remainder of a division by divisor represents.'''
    if remainder == 0:
        return LF_EXACTLY_ZERO
    twice = remainder * 2
    if twice < divisor:
        return LF_LESS_THAN_HALF
    if twice == divisor:
        return LF_EXACTLY_HALF
    return LF_MORE_THAN_HALF


def magnitude_bounds(significand, exponent, radix):
    '''Return integers (low, high) such that 2^low <= significand * radix^exponent < 2^high
    for a positive significand and radix 2 or 10.  Only integer arithmetic is used, so the
    exponent can be of any size.'''
    size = significand.bit_length()
    if radix == 2:
        return size - 1 + exponent, size + exponent
    # 3.3219 < log2(10) < 3.3220
    if exponent >= 0:
        return (size - 1 + exponent * 33219 // 10000,
                size - (-exponent * 33220 // 10000))
    return (size - 1 + exponent * 33220 // 10000,
            size - (-exponent * 33219 // 10000))


def round_up(rounding, lost_fraction, sign, is_odd):
    '''Return True if, when a conversion is inexact, the result should be rounded up (i.e.,
    away from zero by incrementing the significand).

    sign is the sign of the number, and is_odd indicates if the LSB of the new
    significand is set, which is needed for ties-to-even rounding.
    '''
    if lost_fraction == LF_EXACTLY_ZERO:
        return False

    if rounding == ROUND_HALF_EVEN:
        if lost_fraction == LF_EXACTLY_HALF:
            return is_odd
        else:
            return lost_fraction == LF_MORE_THAN_HALF
    elif rounding == ROUND_CEILING:
        return not sign
    elif rounding == ROUND_FLOOR:
        return bool(sign)
    elif rounding == ROUND_DOWN:
        return False
    elif rounding == ROUND_UP:
        return True
    elif rounding == ROUND_HALF_DOWN:
        return lost_fraction == LF_MORE_THAN_HALF
    else:
        return lost_fraction != LF_LESS_THAN_HALF


def parse_number(string):
    '''Parse a decimal or hexadecimal-significand number, or an infinity or NaN, and return a
    ParsedNumber whose value is (-1)^sign * significand * radix^exponent when finite.'''
    op_tuple = (OP_ENCODE, string)
    text = string.strip()

    match = HEX_SIGNIFICAND_REGEX.match(text)
    if match is not None:
        sign_str, _, int_str, frac_str, whole_str, exp_str = match.groups()
        exponent = int(exp_str)
        # If a fraction was given the integer and fraction parts are in int_str and
        # frac_str, otherwise the integer is in whole_str.
        if frac_str is None:
            significand = int(whole_str, 16)
        else:
            fraction = frac_str.rstrip('0')
            significand = int((int_str + fraction) or '0', 16)
            exponent -= len(fraction) * 4
        return ParsedNumber(int(sign_str == '-'), KIND_FINITE, significand, exponent, 2)

    match = DEC_FLOAT_REGEX.match(text)
    if match is None:
        raise MalformedInput(op_tuple, f'invalid number: {string!r}')

    groups = match.groups()
    sign = int(groups[0] == '-')
    if groups[8] is not None:
        return ParsedNumber(sign, KIND_INFINITY, 0, 0, 10)
    if groups[10] is not None:
        return ParsedNumber(sign, KIND_NAN, 0, 0, 10)

    exponent = 0 if groups[7] is None else int(groups[7])
    if groups[3] is None:
        int_str, frac_str = groups[5], ''
    else:
        int_str, frac_str = groups[3], groups[4]

    # Combine them into sig_str removing all insignificant zeroes.  Viewing that as an
    # integer, calculate the exponent adjustment to the true decimal point.
    sig_str = int_str + frac_str.rstrip('0')
    exponent += len(int_str) - len(sig_str)
    sig_str = sig_str.lstrip('0') or '0'
    return ParsedNumber(sign, KIND_FINITE, int(sig_str), exponent, 10)


def exact_fraction(value):
    '''Return the exact value of an int, float, Fraction, Decimal or numeric string as a
    Fraction, or None if it denotes an infinity or a NaN.'''
    if isinstance(value, Fraction):
        return value
    if isinstance(value, float):
        return Fraction(value) if not (isnan(value) or isinf(value)) else None
    if isinstance(value, Decimal):
        return Fraction(value) if value.is_finite() else None
    if isinstance(value, str):
        sign, kind, significand, exponent, radix = parse_number(value)
        if kind != KIND_FINITE:
            return None
        if exponent >= 0:
            result = Fraction(significand * radix ** exponent)
        else:
            result = Fraction(significand, radix ** -exponent)
        return -result if sign else result
    if isinstance(value, int) and not isinstance(value, bool):
        return Fraction(value)
    raise TypeError(f'cannot convert values of type {type(value).__name__}')


#
# Exported functions
#

def classify(fields, fmt):
    '''Return the Classification of RawFields in format fmt.  Every triple of fields is
    classifiable.'''
    _sign, exponent_field, significand_field = fields
    if exponent_field == 0:
        return Classification.SUBNORMAL if significand_field else Classification.ZERO
    if exponent_field == fmt.max_exponent_field:
        return Classification.NAN if significand_field else Classification.INFINITY
    return Classification.NORMAL


def decode(bits, fmt):
    '''Decode a BitLayout, or an unsigned integer bit pattern, of format fmt.'''
    return fmt.decode(bits)


def decode_hex(string, fmt):
    '''Decode a hexadecimal bit pattern of format fmt.'''
    return fmt.decode(BitLayout.from_hex(string, fmt.total_bits))


def decode_bit_string(string, fmt):
    '''Decode a string of exactly fmt.total_bits 0s and 1s.'''
    return fmt.decode(BitLayout.from_bit_string(string, fmt.total_bits))


def encode(value, fmt, context=None):
    '''Return the BitLayout of value in format fmt, correctly rounded according to the
    context's rounding mode.  Overflow and underflow are never errors.'''
    return fmt.encode(value, context)


def far_beyond_range(value, fmt):
    '''Return True if value is a string or Decimal whose exponent alone puts it beyond the
    range of fmt by more than the width of that range.  Building the exact value of such
    inputs can take unbounded time and memory.'''
    if isinstance(value, Decimal):
        if not value.is_finite():
            return False
        value = str(value)
    if not isinstance(value, str):
        return False
    _sign, kind, significand, exponent, radix = parse_number(value)
    if kind != KIND_FINITE or not significand:
        return False
    low, high = magnitude_bounds(significand, exponent, radix)
    margin = fmt.e_max - fmt.e_min + fmt.significand_width
    return fmt.overflows(low, margin) or fmt.underflows(high, margin)


def convert(value, fmt, context=None):
    '''Encode value and return a Conversion: the exact source value, the encoding, its
    decoded value, and the error decoded - source.

    source is None for non-finite input, and for strings and Decimals whose exponent is
    so extreme that far_beyond_range() is True.  error is None unless both source and the
    decoded value are finite.
    '''
    layout = fmt.encode(value, context)
    decoded = fmt.decode(layout)
    source = None if far_beyond_range(value, fmt) else exact_fraction(value)
    error = None
    if source is not None and decoded.value is not None:
        error = decoded.value - source
    return Conversion(source, layout, decoded, error)


def enumerate_layouts(fmt, limit=None, context=None):
    '''Return a LayoutRange of the first min(limit, 2^total_bits) bit patterns of fmt.  If
    limit is None all patterns are included for formats of up to 16 bits, otherwise the
    context's sample_limit.'''
    space = 1 << fmt.total_bits
    if limit is None:
        limit = space if fmt.total_bits <= 16 else (context or get_context()).sample_limit
    if limit < 0:
        raise ValueError(f'limit cannot be negative: {limit}')
    count = min(limit, space)
    logger.debug('enumerating %d of %d bit patterns of %s', count, space, fmt.name)
    return LayoutRange(fmt, 0, count)


def reference_table(fmt, limit=None, context=None):
    '''Return a JSON-serializable dictionary of the reports of the enumerated bit patterns of
    fmt.'''
    samples = [decoded.to_report()
               for decoded in enumerate_layouts(fmt, limit, context).decoded()]
    return {
        'format': fmt.name,
        'exponentWidth': fmt.exponent_width,
        'significandWidth': fmt.significand_width,
        'totalBits': fmt.total_bits,
        'count': len(samples),
        'samples': samples,
    }


def dumps_reference_table(fmt, limit=None, context=None, **kwargs):
    '''Return reference_table() as JSON text.  kwargs are passed to json.dumps.'''
    return json.dumps(reference_table(fmt, limit, context), **kwargs)


DefaultContext = Context()
tls = threading.local()


def get_context():
    try:
        return tls.context
    except AttributeError:
        tls.context = DefaultContext.copy()
        return tls.context


def set_context(context):
    '''Sets the current thread's context to context (not a copy of it).'''
    tls.context = context


class LocalContext:
    '''A context manager that will set the current context for the active thread to a copy of
    context on entry to the with-statement and restore the previous context on exit.  If
    no context is specified a copy of the current context is taken instead.
    '''

    def __init__(self, context=None):
        self.saved_context = None
        self.context_to_set = context

    def __enter__(self):
        self.saved_context = get_context()
        context = (self.context_to_set or self.saved_context).copy()
        set_context(context)
        return context

    def __exit__(self, etype, value, traceback):
        set_context(self.saved_context)


local_context = LocalContext

#
# Constants and predefined formats.
#

HEX_LAYOUT_REGEX = re.compile('(?:0x)?([0-9a-f]+)$', re.ASCII | re.IGNORECASE)
BIT_STRING_REGEX = re.compile('(?:0b)?([01]+)$', re.ASCII | re.IGNORECASE)
HEX_SIGNIFICAND_REGEX = re.compile(
    # sign[opt] hex-sig-prefix
    '([-+]?)0x'
    # (hex-integer[opt].fraction or hex-integer.[opt])
    '(([0-9a-f]*)\\.([0-9a-f]+)|([0-9a-f]+)\\.?)'
    # p exp-sign[opt]dec-exponent
    'p([-+]?[0-9]+)$',
    re.ASCII | re.IGNORECASE
)
DEC_FLOAT_REGEX = re.compile(
    # sign[opt]
    '([-+]?)('
    # (dec-integer[opt].fraction or dec-integer.[opt])
    '(([0-9]*)\\.([0-9]+)|([0-9]+)\\.?)'
    # e sign[opt]dec-exponent   [opt]
    '(e([-+]?[0-9]+))?|'
    # inf or infinity
    '(inf(inity)?)|'
    # nan
    '(nan))$',
    re.ASCII | re.IGNORECASE
)

FP16 = FloatFormat.preset('FP16')
BF16 = FloatFormat.preset('BF16')
TF32 = FloatFormat.preset('TF32')
FP32 = FloatFormat.preset('FP32')
FP64 = FloatFormat.preset('FP64')
