import threading

from edgepipe.atomic import AtomicBool


def test_defaults_to_false():
    flag = AtomicBool()
    assert flag.value is False
    assert not flag


def test_set_and_read():
    flag = AtomicBool()
    flag.set(True)
    assert flag.value is True
    assert bool(flag) is True
    flag.set(False)
    assert flag.value is False


def test_initial_value():
    assert AtomicBool(True).value is True


def test_concurrent_sets_leave_a_valid_value():
    flag = AtomicBool()
    threads = [threading.Thread(target=flag.set, args=(i % 2 == 0,)) for i in range(50)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert flag.value in (True, False)
    flag.set(True)
    assert flag.value is True