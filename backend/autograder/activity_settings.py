"""Per-activity grading settings with configuration defaults."""

from __future__ import annotations

import logging

from pydantic import BaseModel
from sqlalchemy import select

from .config import Quality, Settings
from .db.models import ActivitySettingsModel
from .db.session import session_scope


logger = logging.getLogger(__name__)


class ActivitySettings(BaseModel):
    module_name: str
    module_instance_id: int
    enabled: bool = False
    quality: Quality = "balanced"
    custom_instructions: str = ""
    auto_release: bool = False


class ActivitySettingsStore:
    def __init__(self, settings: Settings) -> None:
        self._default_quality = settings.default_quality

    def defaults(self, module_name: str, module_instance_id: int) -> ActivitySettings:
        return ActivitySettings(
            module_name=module_name,
            module_instance_id=module_instance_id,
            quality=self._default_quality,
        )

    def get(self, module_name: str, module_instance_id: int) -> ActivitySettings:
        with session_scope(commit=False) as session:
            model = self._find(session, module_name, module_instance_id)
            if model is None:
                return self.defaults(module_name, module_instance_id)
            return self._model_to_domain(model)

    def save(self, activity: ActivitySettings) -> ActivitySettings:
        with session_scope() as session:
            model = self._find(session, activity.module_name, activity.module_instance_id)
            if model is None:
                model = ActivitySettingsModel(
                    module_name=activity.module_name,
                    module_instance_id=activity.module_instance_id,
                )
                session.add(model)
            model.enabled = activity.enabled
            model.quality = activity.quality
            model.custom_instructions = activity.custom_instructions
            model.auto_release = activity.auto_release
            session.flush()
            logger.info(
                "Saved grading settings for %s/%s (enabled=%s, auto_release=%s)",
                activity.module_name,
                activity.module_instance_id,
                activity.enabled,
                activity.auto_release,
            )
            return self._model_to_domain(model)

    def _find(self, session, module_name: str, module_instance_id: int) -> ActivitySettingsModel | None:
        stmt = select(ActivitySettingsModel).where(
            ActivitySettingsModel.module_name == module_name,
            ActivitySettingsModel.module_instance_id == module_instance_id,
        )
        return session.execute(stmt).scalar_one_or_none()

    def _model_to_domain(self, model: ActivitySettingsModel) -> ActivitySettings:
        quality = model.quality if model.quality in ("fast", "balanced", "best") else self._default_quality
        return ActivitySettings(
            module_name=model.module_name,
            module_instance_id=model.module_instance_id,
            enabled=bool(model.enabled),
            quality=quality,
            custom_instructions=model.custom_instructions or "",
            auto_release=bool(model.auto_release),
        )


__all__ = ["ActivitySettings", "ActivitySettingsStore"]
