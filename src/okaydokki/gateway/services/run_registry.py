"""RunRegistry -- 单飞运行登记表

task_id -> 运行状态的显式映射，由 TaskService 持有（而非模块级单例）。
try_acquire 是同步的检查并插入，中间没有挂起点，
同一事件循环中两个并发 approve 只有一个能拿到槽位。
进度阶段只在运行期间存在，release 时与运行槽位一起移除。
"""

from okaydokki.core.models.enums import ProgressStage


class RunRegistry:
    """正在运行的任务集合 + 运行中任务的当前进度阶段"""

    def __init__(self) -> None:
        self._running: set[str] = set()
        self._stages: dict[str, ProgressStage] = {}

    def try_acquire(self, task_id: str) -> bool:
        """占用运行槽位；已被占用返回 False"""
        if task_id in self._running:
            return False
        self._running.add(task_id)
        return True

    def release(self, task_id: str) -> None:
        """释放运行槽位并移除进度阶段"""
        self._running.discard(task_id)
        self._stages.pop(task_id, None)

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    def set_stage(self, task_id: str, stage: ProgressStage) -> None:
        # 运行结束后迟到的进度不再登记
        if task_id in self._running:
            self._stages[task_id] = stage

    def get_stage(self, task_id: str) -> ProgressStage | None:
        return self._stages.get(task_id)

    def running_task_ids(self) -> list[str]:
        return sorted(self._running)

    def tracked_stage_count(self) -> int:
        return len(self._stages)
