# tomasulo.py
import argparse
import json
import logging
import sys
import threading

from tomasulo_component import (BROADCAST_PRIORITY, STORE, DecodeError, NoFreeSlot, ProgramComplete, RegisterGroup,
                                ReservationStations)
from tomasulo_parser import parse_program, read_program_text

# run_simulation 的周期上限
MAX_CYCLES = 10000


class InstructionSequencer:
    def __init__(self, instructions=()):
        """
        指令序列：保存程序和程序计数器，每周期尝试发射一条指令。

        Args:
        - instructions (iterable): 解码后的指令
        """
        self.instructions = tuple(instructions)
        self.index = 0

    def reset_with_instructions(self, instructions):
        self.instructions = tuple(instructions)
        self.index = 0

    def complete(self):
        return self.index >= len(self.instructions)

    def current(self):
        if self.complete():
            return None
        return self.instructions[self.index]

    def issue_next(self, reservation_stations, register_group):
        """
        发射下一条指令，成功后程序计数器加一。

        Returns:
        - ReservationStation: 被占用的保留站

        Raises:
        - ProgramComplete: 指令已全部发射
        - NoFreeSlot: 结构冒险，程序计数器不前进，下个周期重试同一条指令
        """
        if self.complete():
            raise ProgramComplete(f"All {len(self.instructions)} instructions issued")
        instruction = self.instructions[self.index]
        rs = reservation_stations.try_issue(instruction, register_group)
        self.index += 1
        return rs

    def to_dict(self):
        return {
            "index": self.index,
            "instructions": [instruction.to_dict() for instruction in self.instructions],
        }


def rs_state(rs_list):
    """
    将保留站列表的状态转换为格式化字符串。

    Input:
    - rs_list (list): 保留站对象列表

    Output:
    - str: 每个保留站一行，依次为 Busy, Time, A, Op, Vj, Vk, Qj, Qk
    """
    state_result = ""
    for rs in rs_list:
        if not rs.busy:
            state_result += f"{rs.name} : No,,,,,,,;\n"
            continue
        fields = [rs.remaining_latency, rs.address, rs.op.opcode, rs.vj, rs.vk, rs.qj, rs.qk]
        fields = ["" if field is None else str(field) for field in fields]
        state_result += f"{rs.name} : Yes, {', '.join(fields)};\n"
    return state_result


class CPU:
    def __init__(self, program_text=""):
        """
        调度驱动：持有寄存器状态表、保留站和指令序列，所有修改都经过同一把锁。

        Args:
        - program_text (str): 初始程序文本
        """
        self.lock = threading.RLock()
        self.register_group = RegisterGroup()
        self.reservation_stations = ReservationStations()
        self.sequencer = InstructionSequencer()
        self.clock_cycles = 0
        self.last_issue = None
        self.reset(program_text)

    def reset(self, program_text=""):
        """
        清空保留站、寄存器和程序，再载入新的程序。

        Raises:
        - DecodeError: 程序文本无法解析，此时模拟器保持清空状态（空程序）
        """
        with self.lock:
            self.clock_cycles = 0
            self.last_issue = None
            self.reservation_stations.reset()
            self.register_group.reset()
            self.sequencer.reset_with_instructions(())
            instructions = parse_program(program_text)
            self.sequencer.reset_with_instructions(instructions)
            logging.debug("Loaded %d instructions", len(instructions))

    def step(self):
        """
        模拟一个时钟周期：先执行和写回，再发射，发射看到的是本周期写回之后的寄存器状态。

        Returns:
        - ProducerTag: 本周期广播的标签，没有广播则为 None
        """
        with self.lock:
            self.clock_cycles += 1
            logging.debug("Advanced scheduler to cycle # %d", self.clock_cycles)
            tag = self.reservation_stations.update(self.register_group)
            try:
                rs = self.sequencer.issue_next(self.reservation_stations, self.register_group)
                self.last_issue = {"status": "issued", "station": rs.name}
            except NoFreeSlot as e:
                logging.debug("Stalled: %s", e)
                self.last_issue = {"status": "stalled", "station": None}
            except ProgramComplete:
                self.last_issue = None
            return tag

    def run_to(self, cycle_count):
        """执行 cycle_count 个周期，每个周期单独加锁"""
        if cycle_count < 0:
            raise ValueError(f"cycle_count must be non-negative, got {cycle_count}")
        for _ in range(cycle_count):
            self.step()

    def are_all_components_idle(self):
        with self.lock:
            return self.sequencer.complete() and self.reservation_stations.finish()

    def snapshot(self):
        """
        返回模拟器状态的只读快照，可直接序列化为 JSON。

        Returns:
        - dict: cycle、program、stations、registers、bus、last_issue
        """
        with self.lock:
            return {
                "cycle": self.clock_cycles,
                "program": self.sequencer.to_dict(),
                "stations": self.reservation_stations.to_dict(),
                "registers": self.register_group.to_list(),
                "bus": self.reservation_stations.bus.to_dict(),
                "last_issue": dict(self.last_issue) if self.last_issue else None,
            }

    def record_component_state(self):
        """
        记录各个组件的状态。

        Output:
        - str: 包含保留站、总线和寄存器状态的格式化字符串
        """
        with self.lock:
            state_result = ""
            # 保留站状态 Add Mult Load Store
            for unit_type in BROADCAST_PRIORITY + (STORE,):
                state_result += rs_state(self.reservation_stations.unit(unit_type).reservation_stations)
            tag, value = self.reservation_stations.bus.read()
            if tag is not None:
                state_result += f"CDB: {tag}, {value};\n"
            else:
                state_result += "CDB: ;\n"
            reg_value = "Value:"
            reg_qi = "Qi:"
            for i, reg in enumerate(self.register_group.registers):
                reg_value += f"x{i}:{reg.value};"
                reg_qi += f"x{i}:{reg.pending if reg.pending else ''};"
            state_result += reg_value + "\n"
            state_result += reg_qi + "\n"
            state_result += "------------------------------------------\n"
            return state_result

    def run_simulation(self, output, max_cycles=MAX_CYCLES):
        """
        运行到所有组件空闲，逐周期写出状态，连续相同的周期合并为一个区间。

        Input:
        - output: 可写的文本文件对象
        - max_cycles (int): 周期上限

        Output:
        - int: 结束时的时钟周期数
        """
        # 用于判断前后两个周期是否输出相同的状态
        pre_state = ""
        # 相同状态开始的周期
        start_cycle = 0
        while not self.are_all_components_idle():
            if self.clock_cycles >= max_cycles:
                logging.warning("Stopped after %d cycles before all components became idle", max_cycles)
                break
            self.step()
            new_state = self.record_component_state()
            if new_state != pre_state:
                if pre_state:
                    output.write(cycle_label(start_cycle, self.clock_cycles - 1))
                    output.write(pre_state)
                pre_state = new_state
                start_cycle = self.clock_cycles
        if pre_state:
            output.write(cycle_label(start_cycle, self.clock_cycles))
            output.write(pre_state)
        for instruction in self.sequencer.instructions:
            output.write(f"{instruction}\n")
        logging.info("Simulation complete after %d cycles", self.clock_cycles)
        return self.clock_cycles


def cycle_label(start, end):
    if start == end:
        return f"cycle_{end};\n"
    return f"cycle_{start}-{end};\n"


def build_parser():
    parser = argparse.ArgumentParser(description="Tomasulo dynamic scheduling simulator")
    parser.add_argument("input", help="program file, one instruction per line")
    parser.add_argument("--cycles", type=int, default=None,
                        help="run exactly this many cycles instead of running until idle")
    parser.add_argument("--max-cycles", type=int, default=MAX_CYCLES,
                        help="upper bound when running until idle (default: %(default)s)")
    parser.add_argument("--output", default=None, help="write the per-cycle state trace to this file")
    parser.add_argument("--json", action="store_true", help="print the final state as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s: %(message)s")

    cpu = CPU()
    try:
        cpu.reset(read_program_text(args.input))
    except (OSError, DecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.cycles is not None:
        if args.cycles < 0:
            print("Error: --cycles must be non-negative", file=sys.stderr)
            return 1
        for _ in range(args.cycles):
            cpu.step()
            print(f"clock Cycle: {cpu.clock_cycles}")
    elif args.output:
        with open(args.output, 'w', encoding='utf-8') as output:
            cpu.run_simulation(output, max_cycles=args.max_cycles)
        print("Simulation Complete.")
    else:
        while not cpu.are_all_components_idle() and cpu.clock_cycles < args.max_cycles:
            cpu.step()
            print(f"clock Cycle: {cpu.clock_cycles}")
        print("Simulation Complete.")

    if args.json:
        print(json.dumps(cpu.snapshot(), indent=2))
    else:
        print(cpu.record_component_state(), end="")
    return 0


if __name__ == "__main__":
    sys.exit(main())
