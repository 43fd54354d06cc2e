from __future__ import annotations

from statemachine import State, StateMachine

from idle_engine.api.models import TaskQueue


def queue_status(queue: TaskQueue) -> str:
    if not queue.is_running:
        return "idle"
    return "paused" if queue.is_paused else "running"


class QueueFSM(StateMachine):
    """FSM wrapper around TaskQueue run state.

    - idle: no current task
    - running: current task advancing on scheduler ticks
    - paused: current task held, ticks skip the queue

    Queue operations mutate the task lists; the FSM only guards transitions and
    writes ``is_running``/``is_paused`` back to the model.
    """

    idle = State("Idle", value="idle", initial=True)
    running = State("Running", value="running")
    paused = State("Paused", value="paused")

    begin = idle.to(running)
    drain = running.to(idle)
    pause = running.to(paused)
    resume = paused.to(running)
    halt = running.to(idle) | paused.to(idle)

    def __init__(self, queue: TaskQueue):
        self.task_queue = queue
        super().__init__(start_value=queue_status(queue))

    def sync_status_to_model(self) -> None:
        status = str(self.current_state.value)
        self.task_queue.is_running = status != "idle"
        self.task_queue.is_paused = status == "paused"
