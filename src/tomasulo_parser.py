# tomasulo_parser.py
import re

from tomasulo_component import DecodeError, Instruction, NUM_REGISTERS, OPCODE_UNIT

# 只接受 ASCII 数字，不接受下划线分隔符
REGISTER_PATTERN = re.compile(r"x(\d+)", re.ASCII)
IMMEDIATE_PATTERN = re.compile(r"[+-]?\d+", re.ASCII)


def parse_register(token):
    """
    解析寄存器操作数 x<N>。

    Input:
    - token (str): 寄存器文本，如 x15

    Output:
    - int: 寄存器编号
    """
    match = REGISTER_PATTERN.fullmatch(token)
    if match is None:
        raise DecodeError(f"Malformed register {token!r}")
    index = int(match.group(1))
    if not 0 <= index < NUM_REGISTERS:
        raise DecodeError(f"Register {token!r} out of range x0-x{NUM_REGISTERS - 1}")
    return index


def parse_immediate(token):
    if IMMEDIATE_PATTERN.fullmatch(token) is None:
        raise DecodeError(f"Malformed immediate {token!r}")
    return int(token)


def parse_instruction(line):
    """
    将输入的指令行解析为指令对象。

    Input:
    - line (str): 输入的指令行，如 "lw x15 -20 x8" 或 "add x1 x2 x3"

    Output:
    - Instruction: 解析得到的指令对象
    """
    fields = line.split()
    if len(fields) != 4:
        raise DecodeError(f"Expected 4 fields, got {len(fields)}", line=line)
    opcode = fields[0]
    if opcode not in OPCODE_UNIT:
        raise DecodeError(f"Unknown opcode {opcode!r}", line=line)
    try:
        dest = parse_register(fields[1])
        if opcode in {"lw", "sw"}:
            src1 = parse_immediate(fields[2])  # lw/sw 的中间字段是立即数偏移
        else:
            src1 = parse_register(fields[2])
        src2 = parse_register(fields[3])
    except DecodeError as e:
        raise DecodeError(e.reason, line=line) from None
    return Instruction(opcode, dest, src1, src2)


def parse_program(text):
    """
    解析程序文本，每行一条指令，长度小于 3 的行忽略。

    Input:
    - text (str): 程序文本

    Output:
    - list: Instruction 列表
    """
    instructions = []
    for line_number, line in enumerate(text.split("\n"), start=1):
        line = line.rstrip()  # 去掉 \r 和行尾空白
        if len(line) < 3:
            continue
        try:
            instructions.append(parse_instruction(line))
        except DecodeError as e:
            raise DecodeError(e.reason, line=e.line, line_number=line_number) from None
    return instructions


def read_program_text(path):
    """
    读取 UTF-8 编码的程序文件。

    Raises:
    - DecodeError: 文件不是合法的 UTF-8
    - OSError: 文件无法读取
    """
    with open(path, 'r', encoding='utf-8') as file:
        try:
            return file.read()
        except UnicodeDecodeError as e:
            raise DecodeError(f"Program file is not valid UTF-8 ({e.reason} at byte {e.start})") from e


def read_program(path):
    return parse_program(read_program_text(path))
