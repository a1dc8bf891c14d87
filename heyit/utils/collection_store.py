"""
图库存储：画廊、回收站与风格预设（使用SQLite3持久化）
"""
import sqlite3
import json
from typing import Any, Callable, List, Optional
from datetime import date, datetime
from heyit.config import Config
from heyit.models.task import Group, ImageItem, ImageStatus, SavedStyle
from heyit.services.errors import NotFoundError, ValidationError
from heyit.utils.logger import logger


GALLERY_KEY = "gallery"
TRASH_KEY = "trash"
STYLES_KEY = "styles"

WEEKDAYS = ["星期一", "星期二", "星期三", "星期四", "星期五", "星期六", "星期日"]

INTERRUPTED_MESSAGE = "服务重启，生成任务已中断。请重新生成。"


def gallery_label(day: date) -> str:
    """画廊分组标签，如 "10月 18日 星期日" """
    return f"{day.month}月 {day.day}日 {WEEKDAYS[day.weekday()]}"


def trash_label(day: date) -> str:
    """回收站分组标签，如 "删除于 2026/10/18" """
    return f"删除于 {day.year}/{day.month}/{day.day}"


class CollectionStore:
    """图库存储类：三个集合各自以一条JSON记录保存，每次修改后整体写回"""

    def __init__(self, db_path: Optional[str] = None, today: Callable[[], date] = date.today):
        """
        初始化并加载全部集合

        Args:
            db_path: 数据库文件路径（如果为None，则使用Config.STORE_DB_PATH）
            today: 返回当天日期的函数，用于生成分组标签
        """
        self.db_path = db_path or Config.STORE_DB_PATH
        self._today = today
        self._init_database()

        self.gallery: List[Group] = self._load_groups(GALLERY_KEY)
        self.trash: List[Group] = self._load_groups(TRASH_KEY)
        self.styles: List[SavedStyle] = self._load_styles()
        self._recover_interrupted()

    # ------------------------------------------------------------------
    # 数据库
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """获取数据库连接"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self):
        """初始化数据库表；数据库不可用时只记录日志，后续读写按空集合处理"""
        try:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS collections (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()
            conn.close()
        except sqlite3.Error as e:
            logger.error(f"初始化图库数据库失败: db_path={self.db_path}, error={e}")

    def _read(self, key: str) -> Optional[Any]:
        try:
            conn = self._get_connection()
            row = conn.execute("SELECT value FROM collections WHERE key = ?", (key,)).fetchone()
            conn.close()
        except sqlite3.Error as e:
            logger.warning(f"读取集合失败，使用空集合: key={key}, error={e}")
            return None

        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"集合数据已损坏，使用空集合: key={key}, error={e}")
            return None

    def _write(self, key: str, value: Any):
        now = datetime.now().isoformat()
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO collections (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """, (key, json.dumps(value, ensure_ascii=False), now))
        conn.commit()
        conn.close()

    def _load_groups(self, key: str) -> List[Group]:
        data = self._read(key)
        if not isinstance(data, list):
            return []
        try:
            groups = [Group.from_dict(g) for g in data]
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"集合结构无效，使用空集合: key={key}, error={e}")
            return []
        return [g for g in groups if g.images]

    def _load_styles(self) -> List[SavedStyle]:
        data = self._read(STYLES_KEY)
        if not isinstance(data, list):
            return []
        try:
            return [SavedStyle.from_dict(s) for s in data]
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"风格预设结构无效，使用空列表: error={e}")
            return []

    def _recover_interrupted(self):
        """上次进程留下的排队/生成中占位已没有对应任务，标记为失败"""
        recovered = 0
        for group in self.gallery:
            for item in group.images:
                item.progress = None
                if item.is_pending:
                    item.status = ImageStatus.FAILED
                    item.error = INTERRUPTED_MESSAGE
                    recovered += 1
        if recovered:
            logger.warning(f"发现 {recovered} 个中断的生成占位，已标记为失败")
            self.save_gallery()

    @staticmethod
    def _group_records(groups: List[Group]) -> List[dict]:
        """序列化分组；进度只在内存中变化，不写入数据库"""
        records = []
        for group in groups:
            record = group.to_dict()
            for image in record["images"]:
                image.pop("progress", None)
            records.append(record)
        return records

    def save_gallery(self):
        self._write(GALLERY_KEY, self._group_records(self.gallery))

    def save_trash(self):
        self._write(TRASH_KEY, self._group_records(self.trash))

    def save_styles(self):
        self._write(STYLES_KEY, [s.to_dict() for s in self.styles])

    # ------------------------------------------------------------------
    # 分组辅助
    # ------------------------------------------------------------------

    @staticmethod
    def _prepend(groups: List[Group], label: str, items: List[ImageItem]):
        """插入到指定标签分组的头部，分组不存在时新建并放在最前"""
        for group in groups:
            if group.date_label == label:
                group.images[0:0] = items
                return
        groups.insert(0, Group(date_label=label, images=list(items)))

    @staticmethod
    def _prune(groups: List[Group]):
        groups[:] = [g for g in groups if g.images]

    @staticmethod
    def _locate(groups: List[Group], group_idx: int, item_idx: int) -> ImageItem:
        if not (0 <= group_idx < len(groups)) or not (0 <= item_idx < len(groups[group_idx].images)):
            raise NotFoundError("图片不存在")
        return groups[group_idx].images[item_idx]

    # ------------------------------------------------------------------
    # 画廊
    # ------------------------------------------------------------------

    def add_to_gallery(self, items: List[ImageItem]):
        """把图片插入今天分组的头部"""
        self._prepend(self.gallery, gallery_label(self._today()), items)
        self.save_gallery()

    def find_by_task(self, task_id: str) -> List[ImageItem]:
        """按画廊顺序返回属于某个任务的全部图片"""
        return [img for group in self.gallery for img in group.images if img.task_id == task_id]

    def discard(self, item_ids: List[str]):
        """从画廊中移除图片（不进入回收站）"""
        ids = set(item_ids)
        for group in self.gallery:
            group.images = [img for img in group.images if img.id not in ids]
        self._prune(self.gallery)
        self.save_gallery()

    def get_image(self, group_idx: int, item_idx: int) -> ImageItem:
        return self._locate(self.gallery, group_idx, item_idx)

    def rename_image(self, group_idx: int, item_idx: int, name: str) -> ImageItem:
        if not name or not name.strip():
            raise ValidationError("名称不能为空")
        item = self._locate(self.gallery, group_idx, item_idx)
        item.name = name.strip()
        self.save_gallery()
        return item

    def delete_image(self, group_idx: int, item_idx: int) -> ImageItem:
        """移入回收站"""
        item = self._locate(self.gallery, group_idx, item_idx)
        if item.is_pending:
            raise ValidationError("图片仍在生成中，不能删除")

        del self.gallery[group_idx].images[item_idx]
        self._prune(self.gallery)
        self._prepend(self.trash, trash_label(self._today()), [item])
        self.save_gallery()
        self.save_trash()
        logger.info(f"图片已移入回收站: item_id={item.id}")
        return item

    # ------------------------------------------------------------------
    # 回收站
    # ------------------------------------------------------------------

    def restore_image(self, group_idx: int, item_idx: int) -> ImageItem:
        """从回收站恢复到今天画廊分组的头部"""
        item = self._locate(self.trash, group_idx, item_idx)
        del self.trash[group_idx].images[item_idx]
        self._prune(self.trash)
        self._prepend(self.gallery, gallery_label(self._today()), [item])
        self.save_trash()
        self.save_gallery()
        logger.info(f"图片已恢复: item_id={item.id}")
        return item

    def permanently_delete(self, group_idx: int, item_idx: int) -> ImageItem:
        item = self._locate(self.trash, group_idx, item_idx)
        del self.trash[group_idx].images[item_idx]
        self._prune(self.trash)
        self.save_trash()
        logger.info(f"图片已永久删除: item_id={item.id}")
        return item

    # ------------------------------------------------------------------
    # 风格预设
    # ------------------------------------------------------------------

    def _style_at(self, index: int) -> SavedStyle:
        if not (0 <= index < len(self.styles)):
            raise NotFoundError("风格不存在")
        return self.styles[index]

    def find_style(self, name: str) -> SavedStyle:
        """按名称查找风格（同名时取最新保存的）"""
        for style in self.styles:
            if style.name == name:
                return style
        raise NotFoundError(f"风格不存在: {name}")

    def add_style(self, style: SavedStyle) -> SavedStyle:
        self.styles.insert(0, style)
        self.save_styles()
        return style

    def update_style(self, index: int, style: SavedStyle) -> SavedStyle:
        self._style_at(index)
        self.styles[index] = style
        self.save_styles()
        return style

    def rename_style(self, index: int, name: str) -> SavedStyle:
        if not name or not name.strip():
            raise ValidationError("风格名称不能为空")
        style = self._style_at(index)
        style.name = name.strip()
        self.save_styles()
        return style

    def delete_style(self, index: int) -> SavedStyle:
        style = self._style_at(index)
        del self.styles[index]
        self.save_styles()
        return style
