"""
Тесты для модуля логирования.
Проверяют корректность работы централизованной системы логирования.
"""
import logging
import logging.handlers
import os
import shutil
import tempfile
import unittest

from markhub_pipeline.logger import (
    LOG_BACKUP_COUNT,
    LOG_MAX_BYTES,
    LoggerManager,
    get_logger,
    log_error_with_context,
    log_performance,
    set_log_level,
    setup_logging,
)


class TestLoggerManager(unittest.TestCase):
    """Тесты для класса LoggerManager."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.log_file = os.path.join(self.temp_dir, "logs", "pipeline.log")
        root_logger = logging.getLogger()
        self._saved_handlers = list(root_logger.handlers)
        self._saved_level = root_logger.level

    def tearDown(self):
        root_logger = logging.getLogger()
        for handler in root_logger.handlers:
            if handler not in self._saved_handlers:
                handler.close()
        root_logger.handlers[:] = self._saved_handlers
        root_logger.setLevel(self._saved_level)
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_singleton_pattern(self):
        """Тест паттерна Singleton."""
        self.assertIs(LoggerManager(), LoggerManager())

    def test_setup_logging_console_only(self):
        setup_logging("DEBUG")

        root_logger = logging.getLogger()
        self.assertEqual(root_logger.level, logging.DEBUG)
        self.assertEqual(len(root_logger.handlers), 1)
        self.assertIsInstance(root_logger.handlers[0], logging.StreamHandler)

    def test_setup_logging_with_file(self):
        """Файловый обработчик создает каталог и ротирует по размеру."""
        setup_logging("INFO", self.log_file)
        get_logger("markhub_pipeline.test").info("Задача добавлена в очередь")

        file_handlers = [
            handler for handler in logging.getLogger().handlers
            if isinstance(handler, logging.handlers.RotatingFileHandler)
        ]
        self.assertEqual(len(file_handlers), 1)
        self.assertEqual(file_handlers[0].maxBytes, LOG_MAX_BYTES)
        self.assertEqual(file_handlers[0].backupCount, LOG_BACKUP_COUNT)
        file_handlers[0].flush()

        with open(self.log_file, encoding="utf-8") as file:
            content = file.read()
        self.assertIn("Задача добавлена в очередь", content)
        self.assertIn("markhub_pipeline.test", content)

    def test_repeated_setup_replaces_handlers(self):
        setup_logging("INFO", self.log_file)
        setup_logging("WARNING")

        root_logger = logging.getLogger()
        self.assertEqual(root_logger.level, logging.WARNING)
        self.assertEqual(len(root_logger.handlers), 1)

    def test_get_logger_cached(self):
        self.assertIs(get_logger("markhub_pipeline.api"), get_logger("markhub_pipeline.api"))
        self.assertEqual(get_logger("markhub_pipeline.api").name, "markhub_pipeline.api")

    def test_set_log_level(self):
        setup_logging("INFO")

        set_log_level("ERROR")

        self.assertEqual(logging.getLogger().level, logging.ERROR)
        self.assertEqual(LoggerManager().log_level, "ERROR")

    def test_unknown_level_falls_back_to_info(self):
        setup_logging("VERBOSE")

        self.assertEqual(logging.getLogger().level, logging.INFO)


class TestLogHelpers(unittest.TestCase):
    """Тесты вспомогательных функций логирования."""

    def test_log_error_with_context(self):
        with self.assertLogs("markhub_pipeline.logger", level="ERROR") as captured:
            log_error_with_context(ValueError("пустой URL"), {"task_id": "t1", "operation": "generate_tags"})

        self.assertEqual(len(captured.records), 1)
        message = captured.records[0].getMessage()
        self.assertIn("ValueError: пустой URL", message)
        self.assertIn("task_id=t1, operation=generate_tags", message)

    def test_log_performance(self):
        with self.assertLogs("markhub_pipeline.logger", level="INFO") as captured:
            log_performance("generate_tags", 1.234, "tags=3")

        self.assertIn("generate_tags выполнена за 1.23с (tags=3)", captured.records[0].getMessage())


if __name__ == '__main__':
    unittest.main()
