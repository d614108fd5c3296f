"""
Storage Module

Persistence for the capture session:

- FrameStore: cropped captures saved as JPEG files. The file path is the
  opaque frame reference handed to the state machine and the pipeline.
- Session stores: the {session_id, hand, finger_index} triple that lets an
  interrupted capture resume at the right finger.

Any failure to write or delete raises StorageError so the caller can keep
its current state.

Usage:
    from biocapture.storage import FrameStore, JsonSessionStore, SessionSnapshot

    store = FrameStore("storage/frames")
    frame_ref = store.save(crop, HandSide.RIGHT, "Thumb")
    store.delete(frame_ref)

    sessions = JsonSessionStore("storage/session.json")
    sessions.save(SessionSnapshot(uuid.uuid4(), HandSide.RIGHT, finger_index=2))
"""

import os
import json
import uuid
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import cv2
import numpy as np

from biocapture.exceptions import StorageError
from biocapture.landmarks import HandSide

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSnapshot:
    """
    Persisted capture progress.

    Attributes:
        session_id: 128-bit session identifier.
        hand: Hand being captured.
        finger_index: Next finger to capture, or None while the palm step
                      has not been confirmed yet.
    """

    session_id: uuid.UUID
    hand: HandSide
    finger_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"session_id": str(self.session_id), "hand": self.hand.value}
        if self.finger_index is not None:
            data["finger_index"] = self.finger_index
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSnapshot":
        finger_index = data.get("finger_index")
        return cls(
            session_id=uuid.UUID(data["session_id"]),
            hand=HandSide(data["hand"]),
            finger_index=int(finger_index) if finger_index is not None else None,
        )


class SessionStore(ABC):
    """Where the capture session keeps its resumable progress."""

    @abstractmethod
    def load(self) -> Optional[SessionSnapshot]:
        pass

    @abstractmethod
    def save(self, snapshot: SessionSnapshot) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class InMemorySessionStore(SessionStore):
    """Session store that lives only as long as the process."""

    def __init__(self, snapshot: Optional[SessionSnapshot] = None):
        self._snapshot = snapshot

    def load(self) -> Optional[SessionSnapshot]:
        return self._snapshot

    def save(self, snapshot: SessionSnapshot) -> None:
        self._snapshot = snapshot

    def clear(self) -> None:
        self._snapshot = None


class JsonSessionStore(SessionStore):
    """
    Session store backed by a small JSON file.

    Writes go to a temporary file that is then renamed over the target, so a
    crash mid-write leaves the previous snapshot intact.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[SessionSnapshot]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return SessionSnapshot.from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return None

    def save(self, snapshot: SessionSnapshot) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(snapshot.to_dict(), f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError("write", self.path, str(e)) from e
        logger.debug(f"Saved session snapshot {snapshot.to_dict()}")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError("delete", self.path, str(e)) from e


class FrameStore:
    """
    Stores cropped captures as JPEG files.

    File names follow "<Hand>_<Label>_<yyyy-MM-dd-HH-mm-ss-SSS>.jpg",
    e.g. "Right_Thumb_2024-05-01-10-30-00-123.jpg".
    """

    def __init__(self, storage_dir: str, jpeg_quality: int = 95):
        self.storage_dir = Path(storage_dir)
        self.jpeg_quality = jpeg_quality
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"FrameStore initialized: storage={self.storage_dir}")

    def _new_path(self, hand: Optional[HandSide], label: str) -> Path:
        timestamp = datetime.now().strftime("%Y-%m-%d-%H-%M-%S-%f")[:-3]
        prefix = f"{hand.value}_" if hand is not None else ""
        path = self.storage_dir / f"{prefix}{label}_{timestamp}.jpg"
        if path.exists():
            path = self.storage_dir / f"{prefix}{label}_{timestamp}_{uuid.uuid4().hex[:6]}.jpg"
        return path

    def save(self, image: np.ndarray, hand: Optional[HandSide], label: str) -> str:
        """
        Save a BGR image and return its frame reference.

        Raises:
            StorageError: If the image cannot be encoded or written.
        """
        if image is None or image.size == 0:
            raise StorageError("write", reason="empty image")

        path = self._new_path(hand, label)
        try:
            ok = cv2.imwrite(str(path), image, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        except cv2.error as e:
            raise StorageError("write", path, str(e)) from e
        if not ok:
            raise StorageError("write", path, "cv2.imwrite returned False")

        logger.info(f"Saved frame {path.name} ({image.shape[1]}x{image.shape[0]})")
        return str(path)

    def load(self, frame_ref: str) -> np.ndarray:
        """Load a stored frame as a BGR image."""
        image = cv2.imread(str(frame_ref))
        if image is None:
            raise StorageError("read", frame_ref, "file missing or not an image")
        return image

    def delete(self, frame_ref: str) -> bool:
        """
        Delete a stored frame.

        Returns:
            True if a file was removed, False if it was already gone.
        """
        path = Path(frame_ref)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"Frame already deleted: {path}")
            return False
        except OSError as e:
            raise StorageError("delete", path, str(e)) from e
        logger.info(f"Deleted frame {path.name}")
        return True

    def list_frames(self, exclude_labels: Sequence[str] = ()) -> List[str]:
        """All stored frame references, skipping the given labels (e.g. "Palm")."""
        refs = []
        for path in sorted(self.storage_dir.glob("*.jpg")):
            if any(f"_{label}_" in f"_{path.name}" for label in exclude_labels):
                continue
            refs.append(str(path))
        return refs


def _resolve_path(path: str) -> str:
    """Relative storage paths are taken relative to the project root."""
    from biocapture.config import get_project_root

    if Path(path).is_absolute():
        return str(path)
    return str(get_project_root() / path)


def get_frame_store(config: Optional[Dict[str, Any]] = None) -> FrameStore:
    """
    Factory function to get a FrameStore.

    Args:
        config: Optional storage config dict. If None, loads from config.yaml.
    """
    if config is None:
        from biocapture.config import get_section_or_default
        config = get_section_or_default("storage")

    return FrameStore(
        _resolve_path(config.get("frames_dir", "storage/frames")),
        jpeg_quality=config.get("jpeg_quality", 95),
    )


def get_session_store(config: Optional[Dict[str, Any]] = None) -> SessionStore:
    """Factory for the session store; JSON file when configured, else in memory."""
    if config is None:
        from biocapture.config import get_section_or_default
        config = get_section_or_default("storage")

    session_file = config.get("session_file")
    if session_file:
        return JsonSessionStore(_resolve_path(session_file))
    return InMemorySessionStore()
