# tomasulo_component.py
import logging
from collections import namedtuple

NUM_REGISTERS = 32

# 功能单元类型
LOAD = "Load"
STORE = "Store"
ADD = "Add"
MULT = "Mult"

# 各功能单元的保留站数量，属于机器的资源模型，运行时不可修改
STATION_CAPACITY = {LOAD: 3, STORE: 3, ADD: 3, MULT: 2}

# 不同操作的执行周期
EXECUTION_CYCLES = {"lw": 2, "sw": 2, "add": 2, "sub": 2, "mul": 10, "div": 10}

OPCODE_UNIT = {"lw": LOAD, "sw": STORE, "add": ADD, "sub": ADD, "mul": MULT, "div": MULT}

# 公共数据总线的仲裁优先级，store 没有目的寄存器，不写总线
BROADCAST_PRIORITY = (ADD, MULT, LOAD)

# 不模拟存储器，load 统一得到这个值
LOAD_PLACEHOLDER_VALUE = 1

# 保留站状态
EXECUTING = "Executing"
AWAITING_BUS = "AwaitingBus"


def to_signed_32(value):
    """将结果截断为有符号 32 位整数"""
    v = value & 0xFFFFFFFF
    if v & 0x80000000:
        return v - 0x100000000
    return v


def truncated_divide(dividend, divisor):
    """
    按 RISC-V div 语义做整数除法：向零取整，除数为 0 时结果为 -1。

    Args:
    - dividend (int): 被除数
    - divisor (int): 除数

    Returns:
    - int: 商
    """
    if divisor == 0:
        return -1
    quotient = abs(dividend) // abs(divisor)
    if (dividend < 0) != (divisor < 0):
        quotient = -quotient
    return quotient


class TomasuloError(Exception):
    """模拟器异常基类"""


class DecodeError(TomasuloError, ValueError):
    def __init__(self, message, line=None, line_number=None):
        """
        指令文本无法解析。

        Args:
        - message (str): 错误描述
        - line (str): 出错的指令行
        - line_number (int): 出错的行号（从 1 开始）
        """
        self.reason = message
        if line_number is not None:
            message = f"line {line_number}: {message}"
        if line is not None:
            message = f"{message}: {line!r}"
        super().__init__(message)
        self.line = line
        self.line_number = line_number


class NoFreeSlot(TomasuloError):
    def __init__(self, unit_type, instruction):
        """结构冒险：目标功能单元没有空闲的保留站"""
        super().__init__(f"No free {unit_type} reservation station for: {instruction}")
        self.unit_type = unit_type
        self.instruction = instruction


class ProgramComplete(TomasuloError):
    """指令序列已全部发射"""


class Instruction(namedtuple("Instruction", ["opcode", "destination", "src1", "src2"])):
    """
    指令类：不可变，包含操作码和三个操作数字段

    - lw rd imm rs : destination=rd, src1=imm, src2=rs（基址寄存器）
    - sw rv imm rs : destination=rv（待写入的值，是源寄存器）, src1=imm, src2=rs
    - add/sub/mul/div rd rs1 rs2 : destination=rd, src1=rs1, src2=rs2
    """
    __slots__ = ()

    @property
    def unit_type(self):
        return OPCODE_UNIT[self.opcode]

    @property
    def latency(self):
        return EXECUTION_CYCLES[self.opcode]

    @property
    def dest_register(self):
        if self.opcode == "sw":
            return None
        return self.destination

    @property
    def is_memory(self):
        return self.opcode in {"lw", "sw"}

    def source_registers(self):
        """
        返回为 vj、vk 提供操作数的寄存器。

        Returns:
        - tuple: (vj 的寄存器, vk 的寄存器)，lw 只有基址寄存器，vk 为 None
        """
        if self.opcode == "lw":
            return self.src2, None
        if self.opcode == "sw":
            return self.destination, self.src2
        return self.src1, self.src2

    def to_tuple(self):
        if self.is_memory:
            middle = str(self.src1)
        else:
            middle = f"x{self.src1}"
        return self.opcode, f"x{self.destination}", middle, f"x{self.src2}"

    def to_dict(self):
        return {
            "opcode": self.opcode,
            "destination": self.destination,
            "src1": self.src1,
            "src2": self.src2,
            "text": str(self),
        }

    def __str__(self):
        return " ".join(self.to_tuple())


class ProducerTag(namedtuple("ProducerTag", ["unit_type", "index"])):
    """重命名标签：指向将产生该值的功能单元及其保留站下标"""
    __slots__ = ()

    def to_dict(self):
        return {"unit": self.unit_type, "index": self.index}

    def __str__(self):
        return f"{self.unit_type}{self.index + 1}"


class Register:
    def __init__(self, value=0, pending=None):
        """
        寄存器类，用于表示一个通用寄存器。

        Args:
        - value (int): 寄存器中存储的数据，pending 不为空时该值已过期
        - pending (ProducerTag): 将写入该寄存器的保留站标签
        """
        self.value = value
        self.pending = pending

    def to_dict(self):
        return {
            "value": self.value,
            "pending": self.pending.to_dict() if self.pending else None,
        }

    def __repr__(self):
        return f"Register(value={self.value}, pending={self.pending})"


class RegisterGroup:
    def __init__(self, num_registers=NUM_REGISTERS):
        """
        寄存器状态表：保存寄存器的值和重命名标签，只记录标签，不引用保留站对象。

        Args:
        - num_registers (int): 寄存器数量
        """
        self.num_registers = num_registers
        self.registers = []
        self.reset()

    def reset(self):
        # 第 i 个寄存器的初值为 i，便于调试
        self.registers = [Register(value=i) for i in range(self.num_registers)]

    def _check_index(self, index):
        if not 0 <= index < self.num_registers:
            raise IndexError(f"Register index out of range: x{index}")

    def get(self, index):
        """
        读取寄存器的快照。

        Args:
        - index (int): 寄存器编号

        Returns:
        - Register: 寄存器副本
        """
        self._check_index(index)
        register = self.registers[index]
        return Register(register.value, register.pending)

    def read(self, index):
        """
        发射时读取源操作数。

        Args:
        - index (int): 寄存器编号

        Returns:
        - tuple: 就绪时为 (值, None)，否则为 (None, 标签)
        """
        register = self.get(index)
        if register.pending is None:
            return register.value, None
        return None, register.pending

    def set_pending(self, index, tag):
        # 每个寄存器只保留最后一次发射的重命名
        self._check_index(index)
        self.registers[index].pending = tag

    def resolve(self, tag, value):
        """
        总线广播结果，所有等待该标签的寄存器都写入结果。

        Args:
        - tag (ProducerTag): 广播的标签
        - value (int): 广播的数据
        """
        for i, register in enumerate(self.registers):
            if register.pending == tag:
                register.pending = None
                register.value = value
                logging.debug("x%d <- %d (%s)", i, value, tag)

    def to_list(self):
        return [register.to_dict() for register in self.registers]


class ReservationStation:
    def __init__(self, unit_type, index):
        """
        保留站类，保存一条在途指令的操作数和执行状态。

        Args:
        - unit_type (str): 所属功能单元类型
        - index (int): 在功能单元中的下标
        """
        self.unit_type = unit_type
        self.index = index
        self.name = f"{unit_type}{index + 1}"
        self.reset()

    def reset(self):
        self.busy = False
        self.remaining_latency = 0
        self.address = None
        self.op = None
        self.vj = None
        self.vk = None
        self.qj = None
        self.qk = None
        self.state = None
        self.result = None

    @property
    def tag(self):
        return ProducerTag(self.unit_type, self.index)

    def ready(self):
        """操作数全部就绪（没有等待的标签）"""
        return self.busy and self.qj is None and self.qk is None

    def issue(self, instruction, register_group):
        """
        将指令写入保留站，源操作数就绪则取值，否则记录标签。

        Args:
        - instruction (Instruction): 待发射的指令
        - register_group (RegisterGroup): 寄存器状态表
        """
        reg_j, reg_k = instruction.source_registers()
        self.vj, self.qj = register_group.read(reg_j)
        if reg_k is not None:
            self.vk, self.qk = register_group.read(reg_k)
        self.busy = True
        self.op = instruction
        self.remaining_latency = instruction.latency
        self.state = EXECUTING
        self.update_address()

    def base_value(self):
        if self.op.opcode == "lw":
            return self.vj
        return self.vk

    def update_address(self):
        # 基址寄存器就绪后计算有效地址
        if self.op is None or not self.op.is_memory or self.address is not None:
            return
        base = self.base_value()
        if base is not None:
            self.address = to_signed_32(self.op.src1 + base)

    def snoop(self, tag, value):
        """监听总线，替换等待该标签的操作数"""
        if not self.busy:
            return
        if self.qj == tag:
            self.qj = None
            self.vj = value
        if self.qk == tag:
            self.qk = None
            self.vk = value
        self.update_address()

    def execute(self):
        """
        计算结果。

        Returns:
        - int: 运算结果
        """
        opcode = self.op.opcode
        if opcode == "add":
            result = self.vj + self.vk
        elif opcode == "sub":
            result = self.vj - self.vk
        elif opcode == "mul":
            result = self.vj * self.vk
        elif opcode == "div":
            result = truncated_divide(self.vj, self.vk)
        elif opcode == "lw":
            result = LOAD_PLACEHOLDER_VALUE
        else:
            raise ValueError(f"Error operation: {opcode}")
        return to_signed_32(result)

    def to_dict(self):
        return {
            "name": self.name,
            "busy": self.busy,
            "remaining_latency": self.remaining_latency,
            "address": self.address,
            "op": self.op.opcode if self.op else None,
            "vj": self.vj,
            "vk": self.vk,
            "qj": self.qj.to_dict() if self.qj else None,
            "qk": self.qk.to_dict() if self.qk else None,
            "state": self.state,
            "result": self.result,
        }


class FunctionalUnit:
    def __init__(self, unit_type, num_reservation_stations):
        """
        功能单元类，包含多个保留站，每周期只推进其中一个。

        Args:
        - unit_type (str): 执行单元类型
        - num_reservation_stations (int): 保留站数量
        """
        self.unit_type = unit_type
        self.reservation_stations = [ReservationStation(unit_type, i) for i in
                                     range(num_reservation_stations)]

    def reset(self):
        for rs in self.reservation_stations:
            rs.reset()

    def get_free_station(self):
        for rs in self.reservation_stations:
            if not rs.busy:
                return rs
        return None

    def issue_instruction(self, instruction, register_group):
        """
        发射指令到功能单元，有目的寄存器的指令同时完成重命名。

        Args:
        - instruction (Instruction): 待发射的指令
        - register_group (RegisterGroup): 寄存器状态表

        Returns:
        - ReservationStation: 被占用的保留站

        Raises:
        - NoFreeSlot: 没有空闲保留站
        """
        rs = self.get_free_station()
        if rs is None:
            raise NoFreeSlot(self.unit_type, instruction)
        # 先读源操作数再重命名目的寄存器
        rs.issue(instruction, register_group)
        dest = instruction.dest_register
        if dest is not None:
            register_group.set_pending(dest, rs.tag)
        logging.debug("Issued: %s -> %s", instruction, rs.name)
        return rs

    def select(self):
        """
        选出本周期由功能单元处理的保留站：已算出结果、等待总线的优先，
        否则取第一个操作数就绪的保留站。
        """
        for rs in self.reservation_stations:
            if rs.busy and rs.state == AWAITING_BUS:
                return rs
        for rs in self.reservation_stations:
            if rs.ready():
                return rs
        return None

    def update(self):
        """
        执行一个周期。

        Returns:
        - ReservationStation: 持有结果、需要写总线的保留站，没有则为 None
        """
        rs = self.select()
        if rs is None:
            return None
        if rs.state == AWAITING_BUS:
            return rs
        if rs.remaining_latency > 0:
            rs.remaining_latency -= 1
            return None
        if self.unit_type == STORE:
            # store 没有消费者，倒计时结束直接释放
            logging.debug("Store retired: %s address=%s", rs.op, rs.address)
            rs.reset()
            return None
        rs.result = rs.execute()
        rs.state = AWAITING_BUS
        return rs

    def snoop(self, tag, value):
        for rs in self.reservation_stations:
            rs.snoop(tag, value)

    def finish(self):
        for rs in self.reservation_stations:
            if rs.busy:
                return False
        return True

    def to_list(self):
        return [rs.to_dict() for rs in self.reservation_stations]


class Bus:
    def __init__(self):
        """
        公共数据总线，每周期只能广播一个结果。

        Attributes:
        - tag (ProducerTag): 本周期广播的标签
        - value (int): 本周期广播的数据
        - new_tag / new_value: 本周期申请写入总线的标签和数据
        """
        self.tag = None
        self.value = None
        self.new_tag = None
        self.new_value = None

    def read(self):
        return self.tag, self.value

    def write(self, tag, value):
        """
        申请写总线，同一周期只有第一个申请者成功。

        Returns:
        - bool: 写入成功返回 True，总线已被占用返回 False
        """
        if self.new_tag is None:
            self.new_tag = tag
            self.new_value = value
            return True
        return False

    def update(self):
        self.tag = self.new_tag
        self.value = self.new_value
        self.new_tag = None
        self.new_value = None

    def reset(self):
        self.tag = None
        self.value = None
        self.new_tag = None
        self.new_value = None

    def to_dict(self):
        if self.tag is None:
            return None
        return {"tag": self.tag.to_dict(), "value": self.value}


class ReservationStations:
    def __init__(self):
        """四个保留站池（load、store、add/sub、mul/div）和公共数据总线"""
        self.bus = Bus()
        self.units = {unit_type: FunctionalUnit(unit_type, capacity)
                      for unit_type, capacity in STATION_CAPACITY.items()}

    def reset(self):
        self.bus.reset()
        for unit in self.units.values():
            unit.reset()

    def unit(self, unit_type):
        return self.units[unit_type]

    def station(self, tag):
        return self.units[tag.unit_type].reservation_stations[tag.index]

    def try_issue(self, instruction, register_group):
        """
        根据操作码选择功能单元并发射。

        Raises:
        - NoFreeSlot: 结构冒险
        """
        return self.units[instruction.unit_type].issue_instruction(instruction, register_group)

    def update(self, register_group):
        """
        执行和写回：各功能单元推进一个周期，按优先级仲裁总线，广播一个结果。

        Args:
        - register_group (RegisterGroup): 寄存器状态表

        Returns:
        - ProducerTag: 本周期广播的标签，没有广播则为 None
        """
        self.units[STORE].update()
        for unit_type in BROADCAST_PRIORITY:
            rs = self.units[unit_type].update()
            if rs is not None and not self.bus.write(rs.tag, rs.result):
                # 仲裁失败的保留站保留结果，下个周期再次申请
                logging.debug("%s waiting for the bus", rs.name)
        self.bus.update()

        tag, value = self.bus.read()
        if tag is None:
            return None
        logging.debug("Broadcast: %s = %d", tag, value)
        register_group.resolve(tag, value)
        for unit in self.units.values():
            unit.snoop(tag, value)
        # 寄存器和所有保留站都监听完毕后才释放产生者，此后该标签才能被重新分配
        self.station(tag).reset()
        return tag

    def finish(self):
        for unit in self.units.values():
            if not unit.finish():
                return False
        return True

    def to_dict(self):
        return {unit_type: unit.to_list() for unit_type, unit in self.units.items()}
