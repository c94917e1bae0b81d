import pytest

from tomasulo_component import (ADD, AWAITING_BUS, EXECUTING, LOAD, MULT, STORE, Bus, Instruction, NoFreeSlot,
                                ProducerTag, RegisterGroup, ReservationStations, to_signed_32, truncated_divide)


@pytest.fixture
def register_group():
    return RegisterGroup()


@pytest.fixture
def stations():
    return ReservationStations()


def test_register_defaults(register_group):
    assert len(register_group.registers) == 32
    for i in range(32):
        reg = register_group.get(i)
        assert reg.value == i
        assert reg.pending is None


@pytest.mark.parametrize("index", [-1, 32, 100])
def test_register_index_out_of_range(register_group, index):
    with pytest.raises(IndexError):
        register_group.get(index)


def test_get_returns_copy(register_group):
    reg = register_group.get(3)
    reg.value = 99
    assert register_group.get(3).value == 3


def test_set_pending_last_issue_wins(register_group):
    register_group.set_pending(1, ProducerTag(LOAD, 0))
    register_group.set_pending(1, ProducerTag(MULT, 1))
    assert register_group.get(1).pending == ProducerTag(MULT, 1)
    assert register_group.read(1) == (None, ProducerTag(MULT, 1))


def test_resolve_all_matching(register_group):
    tag = ProducerTag(ADD, 2)
    register_group.set_pending(4, tag)
    register_group.set_pending(7, tag)
    register_group.set_pending(9, ProducerTag(ADD, 1))
    register_group.resolve(tag, 42)
    assert register_group.read(4) == (42, None)
    assert register_group.read(7) == (42, None)
    assert register_group.get(9).pending == ProducerTag(ADD, 1)
    assert register_group.get(9).value == 9


def test_register_reset(register_group):
    register_group.set_pending(5, ProducerTag(LOAD, 0))
    register_group.resolve(ProducerTag(LOAD, 0), 77)
    register_group.set_pending(6, ProducerTag(LOAD, 1))
    register_group.reset()
    assert register_group.get(5).value == 5
    assert register_group.get(6).pending is None


def test_tag_equality_and_display():
    assert ProducerTag(ADD, 0) == ProducerTag(ADD, 0)
    assert ProducerTag(ADD, 0) != ProducerTag(MULT, 0)
    assert ProducerTag(ADD, 0) != ProducerTag(ADD, 1)
    assert str(ProducerTag(LOAD, 2)) == "Load3"


def test_bus_accepts_one_writer():
    bus = Bus()
    assert bus.write(ProducerTag(ADD, 0), 1)
    assert not bus.write(ProducerTag(MULT, 0), 2)
    assert bus.read() == (None, None)
    bus.update()
    assert bus.read() == (ProducerTag(ADD, 0), 1)
    bus.update()
    assert bus.read() == (None, None)


def test_issue_renames_destination_after_reading_sources(stations, register_group):
    rs = stations.try_issue(Instruction("add", 1, 1, 2), register_group)
    assert rs.name == "Add1"
    assert (rs.vj, rs.vk, rs.qj, rs.qk) == (1, 2, None, None)
    assert rs.remaining_latency == 2
    assert rs.state == EXECUTING
    assert register_group.get(1).pending == ProducerTag(ADD, 0)


def test_issue_records_wait_tag(stations, register_group):
    stations.try_issue(Instruction("add", 1, 2, 3), register_group)
    rs = stations.try_issue(Instruction("mul", 4, 1, 5), register_group)
    assert rs.qj == ProducerTag(ADD, 0)
    assert rs.vj is None
    assert rs.vk == 5
    assert rs.remaining_latency == 10
    assert register_group.get(4).pending == ProducerTag(MULT, 0)


def test_sub_shares_add_pool(stations, register_group):
    stations.try_issue(Instruction("add", 1, 2, 3), register_group)
    rs = stations.try_issue(Instruction("sub", 4, 2, 3), register_group)
    assert rs.tag == ProducerTag(ADD, 1)


def test_load_address(stations, register_group):
    rs = stations.try_issue(Instruction("lw", 1, -4, 10), register_group)
    assert rs.vj == 10
    assert rs.address == 6
    assert rs.vk is None and rs.qk is None


def test_no_free_slot(stations, register_group):
    for i in range(3):
        stations.try_issue(Instruction("lw", i + 1, 0, 0), register_group)
    before = stations.unit(LOAD).to_list()
    with pytest.raises(NoFreeSlot) as excinfo:
        stations.try_issue(Instruction("lw", 9, 0, 0), register_group)
    assert excinfo.value.unit_type == LOAD
    assert stations.unit(LOAD).to_list() == before
    assert register_group.get(9).pending is None


def test_mult_pool_has_two_slots(stations, register_group):
    stations.try_issue(Instruction("mul", 1, 2, 3), register_group)
    stations.try_issue(Instruction("div", 4, 2, 3), register_group)
    with pytest.raises(NoFreeSlot):
        stations.try_issue(Instruction("mul", 5, 2, 3), register_group)


def test_store_uses_value_and_base_registers(stations, register_group):
    stations.try_issue(Instruction("add", 2, 1, 1), register_group)
    rs = stations.try_issue(Instruction("sw", 2, 0, 1), register_group)
    # 值寄存器 x2 未就绪，基址寄存器 x1 就绪
    assert rs.qj == ProducerTag(ADD, 0)
    assert rs.vj is None
    assert (rs.vk, rs.qk) == (1, None)
    assert rs.address == 1


def test_store_waits_for_base_then_retires(stations, register_group):
    stations.try_issue(Instruction("add", 2, 1, 1), register_group)
    rs = stations.try_issue(Instruction("sw", 3, 4, 2), register_group)
    assert rs.vj == 3
    assert rs.qk == ProducerTag(ADD, 0)
    assert rs.address is None

    broadcasts = [stations.update(register_group) for _ in range(3)]
    assert broadcasts == [None, None, ProducerTag(ADD, 0)]
    assert rs.busy
    assert (rs.vk, rs.qk) == (2, None)
    assert rs.address == 6
    assert rs.remaining_latency == 2

    broadcasts = [stations.update(register_group) for _ in range(3)]
    assert broadcasts == [None, None, None]
    assert not rs.busy
    assert stations.finish()


def test_update_latency_then_broadcast(stations, register_group):
    rs = stations.try_issue(Instruction("sub", 1, 5, 7), register_group)
    assert stations.update(register_group) is None
    assert rs.remaining_latency == 1
    assert stations.update(register_group) is None
    assert rs.remaining_latency == 0
    assert stations.update(register_group) == ProducerTag(ADD, 0)
    assert register_group.read(1) == (-2, None)
    assert not rs.busy
    assert stations.bus.read() == (ProducerTag(ADD, 0), -2)


def test_only_first_ready_slot_advances(stations, register_group):
    first = stations.try_issue(Instruction("add", 1, 2, 3), register_group)
    second = stations.try_issue(Instruction("add", 4, 2, 3), register_group)
    stations.update(register_group)
    assert first.remaining_latency == 1
    assert second.remaining_latency == 2


def test_broadcast_priority(stations, register_group):
    add_rs = stations.try_issue(Instruction("add", 1, 2, 3), register_group)
    mul_rs = stations.try_issue(Instruction("mul", 4, 2, 3), register_group)
    load_rs = stations.try_issue(Instruction("lw", 5, 0, 0), register_group)
    for rs in (add_rs, mul_rs, load_rs):
        rs.remaining_latency = 0

    assert stations.update(register_group) == ProducerTag(ADD, 0)
    assert register_group.read(1) == (5, None)
    # 仲裁失败的保留站保留结果
    assert mul_rs.busy and mul_rs.state == AWAITING_BUS and mul_rs.result == 6
    assert load_rs.busy and load_rs.state == AWAITING_BUS and load_rs.result == 1

    assert stations.update(register_group) == ProducerTag(MULT, 0)
    assert register_group.read(4) == (6, None)
    assert load_rs.state == AWAITING_BUS

    assert stations.update(register_group) == ProducerTag(LOAD, 0)
    assert register_group.read(5) == (1, None)

    assert stations.update(register_group) is None
    assert stations.finish()


def test_snoop_reaches_every_pool(stations, register_group):
    producer = stations.try_issue(Instruction("add", 1, 2, 3), register_group)
    load_rs = stations.try_issue(Instruction("lw", 6, 8, 1), register_group)
    store_rs = stations.try_issue(Instruction("sw", 1, 0, 1), register_group)
    mul_rs = stations.try_issue(Instruction("mul", 7, 1, 1), register_group)
    producer.remaining_latency = 0
    stations.update(register_group)
    assert (load_rs.vj, load_rs.qj, load_rs.address) == (5, None, 13)
    assert (store_rs.vj, store_rs.vk, store_rs.qj, store_rs.qk) == (5, 5, None, None)
    assert (mul_rs.vj, mul_rs.vk) == (5, 5)


def test_freed_slot_reuse_gets_fresh_tag(stations, register_group):
    producer = stations.try_issue(Instruction("add", 1, 2, 3), register_group)
    waiter = stations.try_issue(Instruction("mul", 4, 1, 1), register_group)
    producer.remaining_latency = 0
    stations.update(register_group)
    # Add1 已释放，重新发射后旧的等待者不会再匹配
    reused = stations.try_issue(Instruction("add", 1, 9, 9), register_group)
    assert reused.tag == ProducerTag(ADD, 0)
    assert waiter.qj is None and waiter.qk is None
    assert (waiter.vj, waiter.vk) == (5, 5)


def test_divide(stations, register_group):
    rs = stations.try_issue(Instruction("div", 6, 7, 2), register_group)
    assert rs.remaining_latency == 10
    rs.remaining_latency = 0
    stations.update(register_group)
    assert register_group.read(6) == (3, None)

    rs = stations.try_issue(Instruction("div", 6, 7, 0), register_group)
    rs.remaining_latency = 0
    stations.update(register_group)
    assert register_group.read(6) == (-1, None)


def test_truncated_divide():
    assert truncated_divide(7, 2) == 3
    assert truncated_divide(-7, 2) == -3
    assert truncated_divide(7, -2) == -3
    assert truncated_divide(-7, -2) == 3
    assert truncated_divide(5, 0) == -1


def test_to_signed_32():
    assert to_signed_32(5) == 5
    assert to_signed_32(-5) == -5
    assert to_signed_32(2 ** 31) == -2 ** 31
    assert to_signed_32(2 ** 32 + 3) == 3


def test_reset_clears_everything(stations, register_group):
    stations.try_issue(Instruction("add", 1, 2, 3), register_group)
    stations.try_issue(Instruction("sw", 1, 0, 2), register_group)
    stations.reset()
    assert stations.finish()
    for unit_type in (LOAD, STORE, ADD, MULT):
        for rs in stations.unit(unit_type).to_list():
            assert rs["busy"] is False
            assert rs["op"] is None and rs["qj"] is None and rs["state"] is None
    assert stations.bus.to_dict() is None
