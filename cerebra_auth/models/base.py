# Copyright (C) 2024 CerebraUI Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Declarative base for the users and one_time_tokens tables."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
