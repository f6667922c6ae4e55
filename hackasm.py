# coding: utf-8

#---------------------------------------------------------------------------------------
# (C)2023 Robert Woodhead. Creative Commons Attribution License
#---------------------------------------------------------------------------------------

# Usage: python3 hackasm.py [-s] [-v] [-o output] {asm input file}
#
# Assembles a HACK .asm program into a .hack file of the same name (or the
# file named with -o). If -s switch is used, the symbol tables are printed,
# and -v traces both passes of the assembler.
#
# The assembler is a classic two-pass design:
#
# Pass 0 cleans the source: comments are cut at //, whitespace is trimmed,
# blank lines vanish and (LABEL) lines are recognized.
#
# Pass 1 gives every label the address of the instruction that follows it.
#
# Pass 2 resolves @-operands (constants, predefined symbols, labels, Rn aliases
# and finally variables, which are allocated from RAM[16] upwards), decodes the
# dest=comp;jump fields of C-instructions and encodes everything into 16-bit words.
#
# Any error aborts the assembly; all the errors found in a pass are reported
# together. An unknown jump mnemonic is only a warning, and means "no jump".
#

import os
import re
import shutil
import logging
import argparse
from enum import Enum
from typing import List, Dict, Tuple, Any, Iterator, NamedTuple, Optional

Values = Dict[str, int]         # Name:Values pairs, for example in symbol tables
Operation = Dict[str, Any]      # An assembler operation, one per non-blank line.
Line = Tuple[int, str, str]     # Line number, cleaned line, original (unmunged) line
Diagnostic = Tuple[int, str, str]  # Line number, message, original line

logger = logging.getLogger('hackasm')

MAXRAM = 16384                  # Limit of ram space
MAXROM = 32768                  # Limit of rom space
VARIABLE_BASE = 16              # Locations 0-15 are reserved, so 16 is the first available
ADDRESS_LIMIT = 32767           # Largest value that fits in an @-instruction

# Patterns used in parsing @-operands.

DECIMAL = re.compile(r'[0-9]+')
REGISTER_ALIAS = re.compile(r'R([0-9]+)')

# The architecture's fixed symbols. These never change, and an @-instruction
# that names one of them always gets the address listed here.

FIXED_SYMBOLS: Values = {

    'SP': 0,
    'LCL': 1,
    'ARG': 2,
    'THIS': 3,
    'THAT': 4,

    'SCREEN': 16384,
    'KBD': 24576,

}

# Register aliases. These start out in the symbol table like any other symbol,
# so a label of the same name replaces them.

REGISTERS: Values = {f'R{i}': i for i in range(16)}

PREDEFINED: Values = {**FIXED_SYMBOLS, **REGISTERS}

# C instruction template.

CINSTR = 0b1110000000000000

# The ALU operations. Each operation exists in an A-form and (mostly) an M-form;
# both forms share the same control bits and only differ in the a-bit.


class Comp(Enum):

    ZERO = '0'
    ONE = '1'
    MINUS_ONE = '-1'
    D = 'D'
    A = 'A'
    NOT_D = '!D'
    NOT_A = '!A'
    NEG_D = '-D'
    NEG_A = '-A'
    D_PLUS_ONE = 'D+1'
    A_PLUS_ONE = 'A+1'
    D_MINUS_ONE = 'D-1'
    A_MINUS_ONE = 'A-1'
    D_PLUS_A = 'D+A'
    D_MINUS_A = 'D-A'
    A_MINUS_D = 'A-D'
    D_AND_A = 'D&A'
    D_OR_A = 'D|A'


# Control bits (c1..c6) for each ALU operation, before shifting into place.

COMP_BITS: Dict[Comp, int] = {

    Comp.ZERO:          0b101010,
    Comp.ONE:           0b111111,
    Comp.MINUS_ONE:     0b111010,
    Comp.D:             0b001100,
    Comp.A:             0b110000,
    Comp.NOT_D:         0b001101,
    Comp.NOT_A:         0b110001,
    Comp.NEG_D:         0b001111,
    Comp.NEG_A:         0b110011,
    Comp.D_PLUS_ONE:    0b011111,
    Comp.A_PLUS_ONE:    0b110111,
    Comp.D_MINUS_ONE:   0b001110,
    Comp.A_MINUS_ONE:   0b110010,
    Comp.D_PLUS_A:      0b000010,
    Comp.D_MINUS_A:     0b010011,
    Comp.A_MINUS_D:     0b000111,
    Comp.D_AND_A:       0b000000,
    Comp.D_OR_A:        0b010101,

}

# The 28 legal comp mnemonics, mapped to (a-bit, operation). The a-bit is set
# exactly when the mnemonic reads memory (uses M).

COMPS: Dict[str, Tuple[int, Comp]] = {

    '0':    (0, Comp.ZERO),
    '1':    (0, Comp.ONE),
    '-1':   (0, Comp.MINUS_ONE),
    'D':    (0, Comp.D),
    'A':    (0, Comp.A),
    '!D':   (0, Comp.NOT_D),
    '!A':   (0, Comp.NOT_A),
    '-D':   (0, Comp.NEG_D),
    '-A':   (0, Comp.NEG_A),
    'D+1':  (0, Comp.D_PLUS_ONE),
    'A+1':  (0, Comp.A_PLUS_ONE),
    'D-1':  (0, Comp.D_MINUS_ONE),
    'A-1':  (0, Comp.A_MINUS_ONE),
    'D+A':  (0, Comp.D_PLUS_A),
    'D-A':  (0, Comp.D_MINUS_A),
    'A-D':  (0, Comp.A_MINUS_D),
    'D&A':  (0, Comp.D_AND_A),
    'D|A':  (0, Comp.D_OR_A),

    'M':    (1, Comp.A),
    '!M':   (1, Comp.NOT_A),
    '-M':   (1, Comp.NEG_A),
    'M+1':  (1, Comp.A_PLUS_ONE),
    'M-1':  (1, Comp.A_MINUS_ONE),
    'D+M':  (1, Comp.D_PLUS_A),
    'D-M':  (1, Comp.D_MINUS_A),
    'M-D':  (1, Comp.A_MINUS_D),
    'D&M':  (1, Comp.D_AND_A),
    'D|M':  (1, Comp.D_OR_A),

}


class Jump(Enum):

    NULL = 'NULL'
    JGT = 'JGT'
    JEQ = 'JEQ'
    JGE = 'JGE'
    JLT = 'JLT'
    JNE = 'JNE'
    JLE = 'JLE'
    JMP = 'JMP'


# Opcodes for jmps.

JUMP_BITS: Dict[Jump, int] = {

    Jump.NULL:  0b000,
    Jump.JGT:   0b001,
    Jump.JEQ:   0b010,
    Jump.JGE:   0b011,
    Jump.JLT:   0b100,
    Jump.JNE:   0b101,
    Jump.JLE:   0b110,
    Jump.JMP:   0b111,

}

JUMPS: Dict[str, Jump] = {j.value: j for j in Jump if j is not Jump.NULL}


# Which of the A register, D register and M[A] receive the ALU result.

class Dest(NamedTuple):

    a: bool = False
    d: bool = False
    m: bool = False


# Raised when assembly fails. Carries every error (and warning) found so far,
# as (line number, message, original line) tuples.

class AssemblyError(Exception):

    def __init__(self, errors: List[Diagnostic], warnings: Optional[List[Diagnostic]] = None):

        self.errors = errors
        self.warnings = warnings or []
        super().__init__('; '.join(f'line {n}: {message}' for n, message, _ in errors))


# The symbol table. It starts out holding the predefined symbols; pass 1 adds
# the labels and pass 2 adds the variables. We also remember which names are
# labels and which are variables, so the table can be printed by category.

class SymbolTable:

    def __init__(self):

        self.symbols: Values = dict(PREDEFINED)
        self.labels: List[str] = []
        self.variables: List[str] = []
        self.next_variable = VARIABLE_BASE

    def __contains__(self, name: str) -> bool:
        return name in self.symbols

    def __getitem__(self, name: str) -> int:
        return self.symbols[name]

    def __len__(self) -> int:
        return len(self.symbols)

    def define_label(self, name: str, address: int) -> None:

        # A label may shadow a predefined symbol, but two different addresses
        # for the same label is an error.

        if name in self.labels and self.symbols[name] != address:
            raise ValueError(f'Label [{name}] previously defined at address {self.symbols[name]}')

        if name not in self.labels:
            self.labels.append(name)
        self.symbols[name] = address

    def allocate_variable(self, name: str) -> int:

        if self.next_variable >= MAXRAM:
            raise ValueError(f'Out of RAM (data) memory allocating variable [{name}]')

        address = self.next_variable
        self.symbols[name] = address
        self.variables.append(name)
        self.next_variable += 1

        return address


# Pass 0: clean up the source and classify each line. Yields one Operation per
# non-blank line, either a label ('L') or an instruction ('I') tagged with its
# instruction index. Deciding between A- and C-instructions is left to pass 2.
# A label without a closing ')' comes back as an error ('E') operation.

def normalize(source: str) -> Iterator[Operation]:

    pc = 0

    for number, original in enumerate(source.split('\n'), start=1):

        original = original.rstrip('\r')
        o = original.split('//', 1)[0].strip()

        if o == '':
            continue

        line: Line = (number, o, original)

        if o.startswith('('):
            close = o.find(')')
            if close == -1:
                yield {'cType': 'E', 'line': line, 'error': 'Label definition does not end in \')\''}
            else:
                yield {'cType': 'L', 'symbol': o[1:close].strip(), 'line': line}
        else:
            yield {'cType': 'I', 'text': o, 'pc': pc, 'line': line}
            pc += 1


# Pass 1: give each label the address of the next instruction. Returns the
# instructions, in order, for pass 2.

def first_pass(ops: List[Operation], symbols: SymbolTable) -> List[Operation]:

    pc = 0      # Program counter
    code: List[Operation] = []

    for o in ops:
        match o['cType']:

            case 'L':
                try:
                    symbols.define_label(o['symbol'], pc)
                    logger.debug('label %s = %d', o['symbol'], pc)
                except ValueError as oops:
                    o['error'] = str(oops)

            case 'I':
                code.append(o)
                pc += 1

    return code


# Resolve the operand of an @-instruction. The order of the tests matters:
# variables are only created once every other interpretation has failed.

def resolve_address(operand: str, symbols: SymbolTable) -> int:

    if DECIMAL.fullmatch(operand):
        logger.debug('@%s is a constant', operand)
        return int(operand)

    if operand in FIXED_SYMBOLS:
        logger.debug('@%s is predefined', operand)
        return FIXED_SYMBOLS[operand]

    if operand in symbols:
        logger.debug('@%s is a known symbol', operand)
        return symbols[operand]

    alias = REGISTER_ALIAS.fullmatch(operand)
    if alias:
        logger.debug('@%s is a register alias', operand)
        return int(alias.group(1))

    address = symbols.allocate_variable(operand)
    logger.debug('@%s is a new variable at %d', operand, address)

    return address


# Split a C-instruction into its dest, comp and jump mnemonics. Missing parts
# come back as ''.

def split_compute(text: str) -> Tuple[str, str, str]:

    dest, comp, jump = '', text, ''

    if '=' in comp:
        dest, comp = comp.split('=', 1)

    if ';' in comp:
        comp, jump = comp.split(';', 1)

    return dest.strip(), comp.strip(), jump.strip()


# The dest field is any selection of A, D and M, in any order. Other letters
# are ignored.

def decode_dest(mnemonic: str) -> Dest:
    return Dest('A' in mnemonic, 'D' in mnemonic, 'M' in mnemonic)


def decode_comp(mnemonic: str) -> Tuple[int, Comp]:

    if mnemonic not in COMPS:
        raise ValueError(f'Unknown alu operation [{mnemonic}]')

    return COMPS[mnemonic]


# Anything that isn't a jump mnemonic means "no jump".

def decode_jump(mnemonic: str) -> Jump:
    return JUMPS.get(mnemonic, Jump.NULL)


def decode_compute(dest: str, comp: str, jump: str) -> Tuple[Dest, int, Comp, Jump]:

    abit, operation = decode_comp(comp)

    return decode_dest(dest), abit, operation, decode_jump(jump)


def parse_compute(text: str) -> Tuple[Dest, int, Comp, Jump]:
    return decode_compute(*split_compute(text))


# Instruction encoders.

def encode_address(address: int) -> int:

    if address < 0 or address > ADDRESS_LIMIT:
        raise ValueError(f'@ value {address} does not fit in 15 bits (0..{ADDRESS_LIMIT})')

    return address


def encode_compute(dest: Dest, abit: int, comp: Comp, jump: Jump) -> int:

    c = CINSTR
    c |= abit << 12
    c |= COMP_BITS[comp] << 6
    c |= (dest.a << 5) | (dest.d << 4) | (dest.m << 3)
    c |= JUMP_BITS[jump]

    return c


def to_binary(word: int) -> str:
    return '{:016b}'.format(word)


# Pass 2: resolve and encode every instruction. The word goes into o['code'].

def second_pass(code: List[Operation], symbols: SymbolTable) -> List[Operation]:

    for o in code:
        text = o['text']

        try:
            if text.startswith('@'):
                o['cType'] = 'A'
                o['address'] = resolve_address(text[1:].strip(), symbols)
                o['code'] = encode_address(o['address'])
            else:
                o['cType'] = 'C'
                dest, comp, jump = split_compute(text)
                if jump != '' and jump not in JUMPS:
                    o['warning'] = f'Unknown jump [{jump}] treated as no jump'
                fields = decode_compute(dest, comp, jump)
                logger.debug('%s -> dest=%s a=%d comp=%s jump=%s', text, fields[0], fields[1], fields[2].name, fields[3].name)
                o['code'] = encode_compute(*fields)
        except ValueError as oops:
            o['error'] = str(oops)

    return code


def diagnostics(ops: List[Operation], key: str) -> List[Diagnostic]:
    return [(o['line'][0], o[key], o['line'][2]) for o in ops if key in o]


# If any operation picked up an error, abort the assembly.

def check(ops: List[Operation]) -> None:

    errors = diagnostics(ops, 'error')

    if errors:
        raise AssemblyError(errors, diagnostics(ops, 'warning'))


# The whole assembler. Returns the encoded instructions (each with its 'code')
# and the final symbol table, or raises AssemblyError.

def translate(source: str) -> Tuple[List[Operation], SymbolTable]:

    symbols = SymbolTable()

    logger.debug('Pass 0')
    ops = list(normalize(source))
    check(ops)

    logger.debug('Pass 1')
    code = first_pass(ops, symbols)
    check(ops)

    logger.debug('Pass 2')
    code = second_pass(code, symbols)
    check(code)

    if len(code) > MAXROM:
        raise AssemblyError([(code[MAXROM]['line'][0], 'Program too large!', code[MAXROM]['line'][2])],
                            diagnostics(code, 'warning'))

    return code, symbols


def assemble(source: str) -> List[int]:
    return [o['code'] for o in translate(source)[0]]


def assemble_text(source: str) -> str:
    return ''.join(to_binary(word) + '\n' for word in assemble(source))


# Print out a segment of the symbol table in a nicely formatted way.

def print_symbols(symbols: Values, valid: List[str], title: str, byname: bool):

    # Filter out the desired symbols, and sort them by name (case-insensitive) or value.

    valid_symbols = [s for s in symbols.keys() if s in valid]

    if not valid_symbols:
        return

    if byname:
        valid_symbols.sort(key=lambda s: s.upper())
    else:
        valid_symbols.sort(key=lambda s: symbols[s])

    num_symbols = len(valid_symbols)
    max_width = max([len(s) for s in valid_symbols])

    ruler = '-'*max_width + ' -----'
    separator = ' | '

    # Fit as many columns as the terminal allows, but at least one.

    num_cols = min([(shutil.get_terminal_size().columns - len(separator)) // (len(ruler) + len(separator)), num_symbols])
    num_cols = max(num_cols, 1)
    num_rows = (num_symbols + num_cols - 1) // num_cols
    num_cols = (num_symbols + num_rows - 1) // num_rows

    formatted_symbols = [f'{s:{max_width}} {symbols[s]:5}' for s in valid_symbols]

    print(title + (' (by name)' if byname else ' (by value)'))
    print(separator.join([ruler for i in range(0, num_cols)]))

    # Symbols run down the columns, so the final column may be short.

    for row in range(0, num_rows):
        print(separator.join([formatted_symbols[num_rows * col + row] if num_rows * col + row < num_symbols else '' for col in range(0, num_cols)]))

    print()


def print_symbol_table(table: SymbolTable):

    # Labels may shadow predefined names; those show up as labels.

    predefined = [s for s in PREDEFINED if s not in table.labels]

    print()
    print_symbols(table.symbols, predefined, 'Predefined Symbols', byname=True)
    print_symbols(table.symbols, table.labels, 'Branch Addresses', byname=True)
    print_symbols(table.symbols, table.labels, 'Branch Addresses', byname=False)
    print_symbols(table.symbols, table.variables, 'Variables', byname=True)
    print_symbols(table.symbols, table.variables, 'Variables', byname=False)


def print_diagnostics(kind: str, items: List[Diagnostic]):

    for number, message, original in items:
        print(f'{kind} in line {number}: {message}')
        print('\t' + original.strip('\n'))


# Main level. Returns the exit status.

def main(argv: Optional[List[str]] = None) -> int:

    parser = argparse.ArgumentParser(
                    prog = 'hackasm',
                    description = 'Assembles HACK programs',
                    epilog = 'Unless -o is given, results are stored in a .hack file with the same name as the .asm file')

    parser.add_argument('filename', nargs='?', help='The HACK .asm file to be assembled')
    parser.add_argument('-i', '--input', help='The HACK .asm file to be assembled (alternative to filename)')
    parser.add_argument('-o', '--output', help='Where to write the .hack output')
    parser.add_argument('-s', '--symbols', action='store_true', required=False, help='prints helpful symbol tables')
    parser.add_argument('-v', '--verbose', action='store_true', required=False, help='traces the assembler passes')

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s: %(message)s')

    fname = args.input or args.filename

    if fname is None:
        parser.error('an input file is required')

    if args.output:
        oname = args.output
    elif fname.endswith('.asm'):
        oname = fname[:-4] + '.hack'
    else:
        print('Error: Input filename must end in .asm')
        return 1

    if not os.path.isfile(fname):
        print(f'Error: Input file [{fname}] does not exist')
        return 1

    try:
        with open(fname, encoding='utf-8') as asmfile:
            source = asmfile.read()
    except (OSError, UnicodeDecodeError) as oops:
        print(f'Error: Cannot read [{fname}]: {oops}')
        return 1

    try:
        code, table = translate(source)
    except AssemblyError as oops:
        print_diagnostics('Error', oops.errors)
        print_diagnostics('Warning', oops.warnings)
        print(f'Assembly aborted -- {len(oops.errors)} error(s) and {len(oops.warnings)} warning(s) detected.')
        return 1

    print_diagnostics('Warning', diagnostics(code, 'warning'))

    if args.symbols:
        print_symbol_table(table)

    try:
        with open(oname, 'w', encoding='utf-8') as hackfile:
            for o in code:
                hackfile.write(to_binary(o['code']) + '\n')
    except OSError as oops:
        print(f'Error: Cannot write [{oname}]: {oops}')
        return 1

    pc = len(code)
    ram = table.next_variable

    print(f'Program length: {pc} (of {MAXROM}, {int(pc*100/MAXROM)}%), RAM usage: {ram} (of {MAXRAM}, {int(ram*100/MAXRAM)}%)')
    print('Assembly successful - results written to ' + oname)

    return 0


if __name__ == '__main__':
    exit(main())
