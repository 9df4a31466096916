from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from moetv.db import LIKE_ESCAPE, as_bool, contains_pattern
from moetv.util.ids import new_id
from moetv.util.time import utcnow_iso


def _debug(msg: str) -> None:
    print(f"[catalog] {msg}")


def _tags(raw: Any) -> List[str]:
    if not raw:
        return []
    try:
        v = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(t) for t in v] if isinstance(v, list) else []


def public_video(row: Any | Dict[str, Any]) -> Dict[str, Any]:
    d = dict(row)
    out = {
        "id": d.get("id"),
        "title": d.get("title"),
        "description": d.get("description"),
        "videoUrl": d.get("video_url"),
        "thumbnailUrl": d.get("thumbnail_url"),
        "duration": d.get("duration"),
        "views": int(d.get("views") or 0),
        "likes": int(d.get("likes") or 0),
        "category": d.get("category"),
        "tags": _tags(d.get("tags")),
        "isPublic": as_bool(d.get("is_public")),
        "isPremium": as_bool(d.get("is_premium")),
        "uploaderId": d.get("uploader_id"),
        "createdAt": d.get("created_at"),
        "updatedAt": d.get("updated_at"),
    }
    if "uploader_username" in d:
        out["uploader"] = (
            {"id": d.get("uploader_id"), "username": d.get("uploader_username")}
            if d.get("uploader_username")
            else None
        )
    return out


_SELECT = """
    SELECT v.*, u.username AS uploader_username
    FROM videos v
    LEFT JOIN users u ON u.id = v.uploader_id
"""


def create_video(
    conn: Any,
    *,
    uploader_id: str,
    title: str,
    video_url: str,
    description: str | None = None,
    thumbnail_url: str | None = None,
    duration: int | None = None,
    category: str | None = None,
    tags: Optional[List[str]] = None,
    is_premium: bool = False,
    is_public: bool = True,
) -> Dict[str, Any]:
    t = (title or "").strip()
    url = (video_url or "").strip()
    if not t or not url:
        raise ValueError("title_and_url_required")
    if duration is not None and int(duration) < 0:
        raise ValueError("invalid_duration")

    now = utcnow_iso()
    video_id = new_id()
    conn.execute(
        """
        INSERT INTO videos (
            id, title, description, video_url, thumbnail_url, duration,
            views, likes, category, tags, is_public, is_premium, uploader_id,
            created_at, updated_at
        )
        VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            video_id,
            t,
            description,
            url,
            thumbnail_url,
            int(duration) if duration is not None else None,
            0,
            0,
            (category or "").strip() or None,
            json.dumps(list(tags)) if tags else None,
            1 if is_public else 0,
            1 if is_premium else 0,
            str(uploader_id),
            now,
            now,
        ),
    )
    _debug(f"Created video id={video_id} premium={bool(is_premium)} uploader_id={uploader_id}")
    video = get_video(conn, video_id)
    assert video is not None
    return video


def get_video(conn: Any, video_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(_SELECT + " WHERE v.id=?", (str(video_id),)).fetchone()
    return public_video(row) if row is not None else None


def increment_views(conn: Any, video_id: str) -> int:
    """Add one view and return the new count."""
    conn.execute("UPDATE videos SET views = COALESCE(views, 0) + 1 WHERE id=?", (str(video_id),))
    row = conn.execute("SELECT views FROM videos WHERE id=?", (str(video_id),)).fetchone()
    return int(row["views"]) if row is not None else 0


def list_videos(
    conn: Any,
    *,
    category: str | None = None,
    search: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """Public videos, newest first."""
    where = ["v.is_public=1"]
    params: List[Any] = []
    if category:
        where.append("v.category=?")
        params.append(category.strip())
    q = (search or "").strip()
    if q:
        like = contains_pattern(q)
        where.append(
            f"(v.title LIKE ? {LIKE_ESCAPE} OR v.description LIKE ? {LIKE_ESCAPE} OR v.tags LIKE ? {LIKE_ESCAPE})"
        )
        params.extend([like, like, like])

    lim = max(1, min(100, int(limit)))
    off = max(0, int(offset))
    rows = conn.execute(
        _SELECT + " WHERE " + " AND ".join(where) + " ORDER BY v.created_at DESC, v.id DESC LIMIT ? OFFSET ?",
        tuple(params + [lim, off]),
    ).fetchall()
    return [public_video(r) for r in rows]


# -----------------------------
# Watch history
# -----------------------------


def record_progress(
    conn: Any,
    *,
    user_id: str,
    video_id: str,
    watch_time: int,
    completed: bool = False,
) -> Dict[str, Any]:
    """Upsert the (user, video) watch-history row."""
    if int(watch_time) < 0:
        raise ValueError("invalid_watch_time")
    now = utcnow_iso()
    conn.execute(
        """
        INSERT INTO watch_history (id, user_id, video_id, watch_time, completed, last_watched_at)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(user_id, video_id) DO UPDATE SET
            watch_time=excluded.watch_time,
            completed=excluded.completed,
            last_watched_at=excluded.last_watched_at
        """,
        (new_id(), str(user_id), str(video_id), int(watch_time), 1 if completed else 0, now),
    )
    row = conn.execute(
        "SELECT * FROM watch_history WHERE user_id=? AND video_id=?",
        (str(user_id), str(video_id)),
    ).fetchone()
    return _history_entry(row)


def _history_entry(row: Any) -> Dict[str, Any]:
    d = dict(row)
    return {
        "videoId": d.get("video_id"),
        "watchTime": int(d.get("watch_time") or 0),
        "completed": as_bool(d.get("completed")),
        "lastWatchedAt": d.get("last_watched_at"),
        "title": d.get("title"),
        "thumbnailUrl": d.get("thumbnail_url"),
    }


def list_history(conn: Any, user_id: str, *, limit: int = 50) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT h.*, v.title, v.thumbnail_url
        FROM watch_history h
        JOIN videos v ON v.id = h.video_id
        WHERE h.user_id=?
        ORDER BY h.last_watched_at DESC
        LIMIT ?
        """,
        (str(user_id), max(1, min(200, int(limit)))),
    ).fetchall()
    return [_history_entry(r) for r in rows]


# -----------------------------
# Favorites
# -----------------------------


def add_favorite(conn: Any, *, user_id: str, video_id: str) -> None:
    conn.execute(
        """
        INSERT INTO favorites (id, user_id, video_id, created_at) VALUES (?,?,?,?)
        ON CONFLICT(user_id, video_id) DO NOTHING
        """,
        (new_id(), str(user_id), str(video_id), utcnow_iso()),
    )


def remove_favorite(conn: Any, *, user_id: str, video_id: str) -> bool:
    cur = conn.execute(
        "DELETE FROM favorites WHERE user_id=? AND video_id=?",
        (str(user_id), str(video_id)),
    )
    return int(cur.rowcount or 0) > 0


def list_favorites(conn: Any, user_id: str) -> List[Dict[str, Any]]:
    rows = conn.execute(
        _SELECT
        + """
        JOIN favorites f ON f.video_id = v.id
        WHERE f.user_id=?
        ORDER BY f.created_at DESC
        """,
        (str(user_id),),
    ).fetchall()
    return [public_video(r) for r in rows]


# -----------------------------
# Comments
# -----------------------------


def add_comment(
    conn: Any,
    *,
    video_id: str,
    user_id: str,
    content: str,
    parent_id: str | None = None,
) -> Dict[str, Any]:
    text = (content or "").strip()
    if not text:
        raise ValueError("comment_blank")
    if parent_id:
        parent = conn.execute(
            "SELECT 1 FROM comments WHERE id=? AND video_id=?",
            (str(parent_id), str(video_id)),
        ).fetchone()
        if parent is None:
            raise ValueError("parent_not_found")

    now = utcnow_iso()
    comment_id = new_id()
    conn.execute(
        """
        INSERT INTO comments (id, video_id, user_id, content, parent_id, likes, created_at, updated_at)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (comment_id, str(video_id), str(user_id), text, parent_id or None, 0, now, now),
    )
    row = conn.execute(
        """
        SELECT c.*, u.username FROM comments c
        LEFT JOIN users u ON u.id = c.user_id
        WHERE c.id=?
        """,
        (comment_id,),
    ).fetchone()
    return _comment(row)


def _comment(row: Any) -> Dict[str, Any]:
    d = dict(row)
    return {
        "id": d.get("id"),
        "videoId": d.get("video_id"),
        "userId": d.get("user_id"),
        "username": d.get("username"),
        "content": d.get("content"),
        "parentId": d.get("parent_id"),
        "likes": int(d.get("likes") or 0),
        "createdAt": d.get("created_at"),
    }


def list_comments(conn: Any, video_id: str) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT c.*, u.username FROM comments c
        LEFT JOIN users u ON u.id = c.user_id
        WHERE c.video_id=?
        ORDER BY c.created_at ASC, c.id ASC
        """,
        (str(video_id),),
    ).fetchall()
    return [_comment(r) for r in rows]
