from __future__ import annotations

from typing import Optional

from PyQt6.QtCore import QPoint, Qt, pyqtSignal
from PyQt6.QtGui import QFont, QKeySequence, QShortcut, QTextCursor
from PyQt6.QtWidgets import (
    QFrame,
    QHBoxLayout,
    QLabel,
    QPushButton,
    QSizeGrip,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from config_utils import read_int_env
from segment_store import SegmentStore

RTL_LANGUAGES = {"ar", "fa", "he", "ur"}
CHANNEL_TITLES = {
    "ar": "العربية",
    "en": "English",
    "fr": "Français",
    "zh": "中文",
    "es": "Español",
    "de": "Deutsch",
}
PLACEHOLDERS = {
    "ar": "اضغط على زر الميكروفون وابدأ بالتحدث...",
    "en": "Translation will appear here...",
    "fr": "La traduction apparaîtra ici...",
    "zh": "翻译将显示在这里...",
}


class ChannelColumn(QFrame):
    def __init__(self, channel: str, font_size: int) -> None:
        super().__init__()
        self.channel = channel
        self.rendered_count = 0
        self.setObjectName("channelColumn")

        layout = QVBoxLayout(self)
        layout.setContentsMargins(8, 8, 8, 8)
        layout.setSpacing(4)

        self.title_label = QLabel(CHANNEL_TITLES.get(channel, channel.upper()))
        self.title_label.setObjectName("channelTitle")
        layout.addWidget(self.title_label)

        self.transcript_view = QTextEdit()
        self.transcript_view.setReadOnly(True)
        self.transcript_view.setAcceptRichText(False)
        self.transcript_view.setLineWrapMode(QTextEdit.LineWrapMode.WidgetWidth)
        self.transcript_view.setPlaceholderText(PLACEHOLDERS.get(channel, ""))
        font = QFont()
        font.setPointSize(font_size)
        self.transcript_view.setFont(font)
        layout.addWidget(self.transcript_view)

        self.interim_label = QLabel("")
        self.interim_label.setObjectName("interimLine")
        self.interim_label.setWordWrap(True)
        layout.addWidget(self.interim_label)

        if channel.split("-")[0] in RTL_LANGUAGES:
            self.setLayoutDirection(Qt.LayoutDirection.RightToLeft)
            self.interim_label.setAlignment(Qt.AlignmentFlag.AlignRight)

    def append_lines(self, lines: list[str]) -> None:
        should_scroll = self._is_user_at_bottom()
        for line in lines:
            if self.transcript_view.toPlainText():
                self.transcript_view.insertPlainText("\n")
            self.transcript_view.insertPlainText(line)
        self.rendered_count += len(lines)
        if should_scroll:
            cursor = self.transcript_view.textCursor()
            cursor.movePosition(QTextCursor.MoveOperation.End)
            self.transcript_view.setTextCursor(cursor)
            self.transcript_view.ensureCursorVisible()

    def set_interim(self, text: str) -> None:
        self.interim_label.setText(text)
        self.interim_label.setVisible(bool(text))

    def reset(self) -> None:
        self.rendered_count = 0
        self.transcript_view.clear()
        self.set_interim("")

    def _is_user_at_bottom(self) -> bool:
        scrollbar = self.transcript_view.verticalScrollBar()
        return scrollbar.value() >= (scrollbar.maximum() - 2)


class OverlayWindow(QWidget):
    DRAG_ZONE_HEIGHT = 56

    toggle_listening = pyqtSignal(bool)
    clear_requested = pyqtSignal()

    def __init__(self, channels: tuple[str, ...]) -> None:
        super().__init__()
        self._drag_offset: Optional[QPoint] = None
        self._listening = False
        self._store: Optional[SegmentStore] = None
        self._font_size = read_int_env("OVERLAY_FONT_SIZE", 16)
        self.columns: dict[str, ChannelColumn] = {}

        self._build_ui(channels)
        self._apply_window_style()

        self.toggle_shortcut = QShortcut(QKeySequence("Space"), self)
        self.toggle_shortcut.setContext(Qt.ShortcutContext.WindowShortcut)
        self.toggle_shortcut.activated.connect(self._on_start_stop_clicked)

    def bind_store(self, store: SegmentStore) -> None:
        self._store = store
        store.set_change_listener(self.refresh_channel)
        self.refresh_channel(None)

    def refresh_channel(self, channel: Optional[str]) -> None:
        if self._store is None:
            return
        if channel is None:
            for column in self.columns.values():
                column.reset()
            targets = list(self.columns)
        else:
            targets = [channel] if channel in self.columns else []
        for name in targets:
            column = self.columns[name]
            snapshot = self._store.snapshot(name)
            if len(snapshot) < column.rendered_count:
                column.reset()
            column.append_lines(snapshot[column.rendered_count :])
            column.set_interim(self._store.interim(name))

    def set_listening(self, listening: bool) -> None:
        self._listening = listening
        self.start_stop_button.setText("Stop Listening" if listening else "Start Listening")

    def set_status(self, message: str) -> None:
        self.status_label.setText(message)

    def _build_ui(self, channels: tuple[str, ...]) -> None:
        root = QVBoxLayout(self)
        root.setContentsMargins(6, 6, 6, 6)

        panel = QFrame()
        panel.setObjectName("overlayPanel")
        root.addWidget(panel)

        layout = QVBoxLayout(panel)
        layout.setContentsMargins(12, 12, 12, 12)
        layout.setSpacing(8)

        controls = QHBoxLayout()
        controls.setSpacing(6)
        layout.addLayout(controls)

        self.start_stop_button = QPushButton("Start Listening")
        self.start_stop_button.clicked.connect(self._on_start_stop_clicked)
        controls.addWidget(self.start_stop_button)

        clear_button = QPushButton("Clear")
        clear_button.clicked.connect(self.clear_requested.emit)
        controls.addWidget(clear_button)

        minimize_button = QPushButton("Minimize")
        minimize_button.clicked.connect(self.showMinimized)
        controls.addWidget(minimize_button)
        controls.addStretch(1)

        columns_row = QHBoxLayout()
        columns_row.setSpacing(8)
        for channel in channels:
            column = ChannelColumn(channel, self._font_size)
            self.columns[channel] = column
            columns_row.addWidget(column)
        layout.addLayout(columns_row)

        self.status_label = QLabel("Idle")
        status_row = QHBoxLayout()
        status_row.addWidget(self.status_label)
        status_row.addStretch(1)
        self.size_grip = QSizeGrip(panel)
        status_row.addWidget(self.size_grip, alignment=Qt.AlignmentFlag.AlignBottom | Qt.AlignmentFlag.AlignRight)
        layout.addLayout(status_row)

    def _apply_window_style(self) -> None:
        self.setWindowTitle("Live Translator")
        self.setWindowFlags(
            Qt.WindowType.FramelessWindowHint
            | Qt.WindowType.WindowStaysOnTopHint
            | Qt.WindowType.Tool
        )
        self.setAttribute(Qt.WidgetAttribute.WA_TranslucentBackground, True)
        self.setMinimumSize(720, 260)
        self.resize(1200, 420)

        self.setStyleSheet(
            """
            #overlayPanel {
                background-color: rgba(28, 28, 28, 190);
                border: 1px solid rgba(255, 255, 255, 48);
                border-radius: 12px;
            }
            #channelColumn {
                background-color: rgba(0, 0, 0, 110);
                border: 1px solid rgba(255, 255, 255, 32);
                border-radius: 10px;
            }
            #channelTitle {
                color: rgba(255, 255, 255, 200);
                font-weight: bold;
            }
            #interimLine {
                color: rgba(255, 255, 255, 140);
                font-style: italic;
            }
            QTextEdit {
                background-color: rgba(43, 43, 43, 0);
                color: white;
                border: none;
                padding: 6px;
            }
            QLabel {
                color: white;
            }
            QPushButton {
                background-color: rgba(70, 70, 70, 220);
                color: white;
                border: 1px solid rgba(255, 255, 255, 50);
                border-radius: 8px;
                padding: 6px 9px;
            }
            QPushButton:hover {
                background-color: rgba(88, 88, 88, 220);
            }
            """
        )

    def _on_start_stop_clicked(self) -> None:
        next_state = not self._listening
        self.set_listening(next_state)
        self.toggle_listening.emit(next_state)

    def mousePressEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        if event.button() == Qt.MouseButton.LeftButton:
            local_pos = event.position().toPoint()
            if local_pos.y() <= self.DRAG_ZONE_HEIGHT:
                self._drag_offset = event.globalPosition().toPoint() - self.frameGeometry().topLeft()
                event.accept()

    def mouseMoveEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        if self._drag_offset is not None and event.buttons() & Qt.MouseButton.LeftButton:
            self.move(event.globalPosition().toPoint() - self._drag_offset)
            event.accept()

    def mouseReleaseEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        self._drag_offset = None
        event.accept()
