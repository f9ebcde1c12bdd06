"""Examples of concurrently updating progress bars drawn in place"""

import logging
import random
import sys
import threading
import time

from multibar import (
    Console,
    ProgressBar,
    RefreshLoop,
    RenderConfig,
    Status,
    UIMode,
    print_bar,
    show_progress,
)


class Counter:
    """Work counter shared between a worker thread and its progress bar"""

    def __init__(self, total):
        self.total = total
        self.current = 0
        self.started = time.monotonic()
        self._lock = threading.Lock()

    def increment(self):
        with self._lock:
            self.current += 1

    def progress(self):
        with self._lock:
            current = self.current
        elapsed = max(time.monotonic() - self.started, 1e-6)
        return current / self.total, [f'{current}/{self.total}', f'{current / elapsed:.1f}/s']


def worker(bar, counter, done, delay):
    while counter.current < counter.total and not done.is_set():
        time.sleep(random.uniform(0, delay))
        counter.increment()
    bar.status = Status.INTERRUPTED if done.is_set() else Status.DONE


def example_0():
    print("=== Example 0: Three workers with interleaved log output ===")

    console = Console.from_std()
    log = logging.getLogger('examples')
    log.addHandler(console.log_handler(fmt='%(levelname)s %(message)s'))
    log.setLevel(logging.INFO)
    log.propagate = False

    done = threading.Event()
    jobs = [('http_reqs', 200, 0.02), ('vus', 40, 0.1), ('iterations', 120, 0.04)]
    bars, threads = [], []
    for name, total, delay in jobs:
        counter = Counter(total)
        bar = ProgressBar(left=name, progress=counter.progress)
        bars.append(bar)
        threads.append(threading.Thread(target=worker, args=(bar, counter, done, delay)))

    loop = RefreshLoop(bars, console, RenderConfig.from_env())
    loop.start()
    for thread in threads:
        thread.start()

    for i in range(3):
        time.sleep(1)
        log.info("Demo of log lines printed above the bars: step %d", i + 1)

    for thread in threads:
        thread.join()
    loop.stop()


def example_1():
    print("=== Example 1: Compact mode, cancelled halfway ===")

    done = threading.Event()
    counter = Counter(100)
    bar = ProgressBar(left='cancelled early', progress=counter.progress)
    thread = threading.Thread(target=worker, args=(bar, counter, done, 0.05))
    thread.start()
    threading.Timer(2, done.set).start()

    show_progress(done, [bar], config=RenderConfig.from_env(ui_mode=UIMode.COMPACT))
    thread.join()


def example_2():
    print("=== Example 2: A single overwritten line ===")

    console = Console.from_std()
    counter = Counter(50)
    bar = ProgressBar(left='init', progress=counter.progress, width=30)
    for _ in range(counter.total):
        counter.increment()
        print_bar(console.stdout, bar, f'{counter.current}/{counter.total}')
        time.sleep(0.02)
    console.stdout.write('\n')


if __name__ == '__main__':
    examples = [example_0, example_1, example_2]
    selected = sys.argv[1:] or [str(i) for i in range(len(examples))]
    for index in selected:
        examples[int(index)]()
