"""Tests for the tool-output and bridge-payload parsers."""

from datetime import date, datetime

from databridge.models import APPLICATIONS, ARCHIVES, DOCUMENTS, MUSIC, OTHER, PHOTOS, VIDEOS
from databridge.parsers import (
    VIDEO_EXTENSIONS,
    category_for_extension,
    parse_adb_devices,
    parse_call_rows,
    parse_contact_rows,
    parse_contacts_json,
    parse_files_json,
    parse_idevice_ids,
    parse_ls_listing,
    parse_media_json,
    parse_message_rows,
    parse_messages_json,
)

from conftest import ADB_DEVICES

CAMERA_LISTING = """total 9624
drwxrwx--x 2 u0_a171 media_rw    4096 2024-03-29 10:00 .thumbnails
-rw-rw---- 1 u0_a171 media_rw 3133747 2024-03-29 10:00 IMG_20240329_100000.jpg
-rw-rw---- 1 u0_a171 media_rw 2500000 2024-03-30 11:15 IMG_20240330_111500.jpg
-rw-rw---- 1 u0_a171 media_rw  950000 2024-04-01 09:05 Screenshot_1.png
-rw-rw---- 1 u0_a171 media_rw 9000000 2024-04-02 18:30 VID_20240402_183000.mp4
"""


class TestDeviceListings:
    def test_adb_devices(self):
        devices = parse_adb_devices(ADB_DEVICES)
        assert [d.id for d in devices] == ["SRC123", "DST456", "UNAUTH9"]
        src = devices[0]
        assert src.is_android and src.authorized
        assert src.model == "Pixel_7" and src.name == "panther"
        unauth = devices[2]
        assert not unauth.authorized
        assert unauth.model == "Android Device"
        assert unauth.name == unauth.model

    def test_adb_daemon_noise_is_ignored(self):
        output = ("* daemon not running; starting now at tcp:5037\n"
                  "* daemon started successfully\n"
                  "List of devices attached\n"
                  "emulator-5554\toffline\n")
        devices = parse_adb_devices(output)
        assert len(devices) == 1
        assert devices[0].id == "emulator-5554" and not devices[0].authorized

    def test_idevice_ids(self):
        assert parse_idevice_ids("abc\n\n  def  \n") == ["abc", "def"]


class TestLsListing:
    def test_photos_skip_directories_and_videos(self):
        items = parse_ls_listing(CAMERA_LISTING, "/sdcard/DCIM/Camera")
        assert [i.display_name for i in items] == [
            "IMG_20240329_100000.jpg", "IMG_20240330_111500.jpg", "Screenshot_1.png",
        ]
        assert [i.size for i in items] == [3133747, 2500000, 950000]
        assert items[0].file_path == "/sdcard/DCIM/Camera/IMG_20240329_100000.jpg"
        assert items[0].timestamp == datetime(2024, 3, 29, 10, 0)

    def test_videos_use_their_own_extensions(self):
        items = parse_ls_listing(CAMERA_LISTING, "/sdcard/DCIM/Camera/", VIDEO_EXTENSIONS)
        assert [i.display_name for i in items] == ["VID_20240402_183000.mp4"]

    def test_three_photos_and_a_directory(self):
        listing = (
            "drwxrwx--x 2 u0_a1 media_rw 4096 2024-01-01 00:00 Edited\n"
            "-rw-rw---- 1 u0_a1 media_rw 100 2024-01-01 00:00 a.jpg\n"
            "-rw-rw---- 1 u0_a1 media_rw 200 2024-01-01 00:00 b.jpg\n"
            "-rw-rw---- 1 u0_a1 media_rw 300 2024-01-01 00:00 c.jpg\n"
        )
        items = parse_ls_listing(listing, "/sdcard/DCIM/Camera/")
        assert len(items) == 3
        assert sum(i.size for i in items) == 600

    def test_hidden_files_are_skipped(self):
        listing = "-rw-rw---- 1 u0_a1 media_rw 100 2024-01-01 00:00 .pending.jpg\n"
        assert parse_ls_listing(listing, "/x/") == []

    def test_unparseable_line_is_logged(self, caplog):
        assert parse_ls_listing("ls: /sdcard/DCIM/Camera/: No such file\n", "/x/") == []
        assert "Could not parse listing line" in caplog.text

    def test_pre_1980_dates_are_moved_forward(self):
        listing = "-rw-rw---- 1 u0_a1 media_rw 100 1970-01-05 08:00 a.jpg\n"
        items = parse_ls_listing(listing, "/x/", today=date(2024, 6, 1))
        assert items[0].timestamp == datetime(2024, 1, 5, 8, 0)

    def test_future_day_uses_previous_year(self):
        listing = "-rw-rw---- 1 u0_a1 media_rw 100 1970-12-24 08:00 a.jpg\n"
        items = parse_ls_listing(listing, "/x/", today=date(2024, 6, 1))
        assert items[0].timestamp.year == 2023


class TestContentQueryRows:
    def test_contacts(self):
        output = ("Row: 0 _id=5, display_name=Alice, times_contacted=3, last_time_contacted=1700000000000\n"
                  "Row: 1 _id=6, display_name=Bob, times_contacted=0, last_time_contacted=0\n")
        contacts = parse_contact_rows(output)
        assert [c.display_name for c in contacts] == ["Alice", "Bob"]
        assert contacts[0].size == 1024 + 2 * len("Alice")
        assert contacts[0].extra["times_contacted"] == 3
        assert contacts[0].timestamp.year == 2023
        assert contacts[1].timestamp is None

    def test_out_of_range_timestamp_keeps_the_row(self):
        output = "Row: 0 _id=5, display_name=Alice, times_contacted=3, last_time_contacted=99999999999999999\n"
        contacts = parse_contact_rows(output)
        assert len(contacts) == 1
        assert contacts[0].timestamp is None

    def test_messages(self):
        output = "Row: 0 _id=1, address=+5511999, body=Hello there, date=1700000000000\n"
        (msg,) = parse_message_rows(output)
        assert msg.display_name == "Message from +5511999"
        assert msg.extra == {"address": "+5511999", "body": "Hello there"}
        assert msg.size == len("Hello there") + len("+5511999")

    def test_calls(self):
        output = ("Row: 0 _id=7, number=555, date=1700000000000, duration=30, type=2\n"
                  "Row: 1 _id=8, number=556, date=1700000000000, duration=0, type=3\n")
        calls = parse_call_rows(output)
        assert calls[0].display_name == "Call outgoing - 555"
        assert calls[0].size == 300
        assert calls[1].extra["type"] == "missed"

    def test_rows_that_do_not_match_are_ignored(self):
        assert parse_contact_rows("No result found.\n") == []


class TestBridgePayloads:
    def test_category_for_extension(self):
        assert category_for_extension("song.MP3") == MUSIC
        assert category_for_extension("report.pdf") == DOCUMENTS
        assert category_for_extension("app.apk") == APPLICATIONS
        assert category_for_extension("README") == OTHER

    def test_media_json_groups_by_type_tag(self):
        grouped = parse_media_json([
            {"path": "/sdcard/DCIM/a.jpg", "name": "a.jpg", "size": 10, "type": "IMAGE"},
            {"path": "/sdcard/DCIM/b.mp4", "name": "b.mp4", "size": "20", "type": "VIDEO",
             "metadata": {"duration": 12}},
            {"path": "/sdcard/Music/c.mp3", "name": "c.mp3"},
            {"name": "missing-path.jpg"},
            "not an object",
        ])
        assert [i.display_name for i in grouped[PHOTOS]] == ["a.jpg"]
        video = grouped[VIDEOS][0]
        assert video.size == 20 and video.extra["duration"] == 12
        assert grouped[MUSIC][0].extra["media_type"] == MUSIC

    def test_files_json(self):
        grouped = parse_files_json([
            {"path": "/sdcard/Download/x.zip", "name": "x.zip", "type": "ARCHIVE"},
            {"path": "/sdcard/Download/y.docx", "name": "y.docx"},
        ])
        assert set(grouped) == {ARCHIVES, DOCUMENTS}

    def test_contacts_json(self):
        contacts = parse_contacts_json([
            {"id": "1", "displayName": "Ana", "phoneNumbers": ["123"], "photoUri": "content://p/1"},
            {"id": "2"},
        ])
        assert len(contacts) == 1
        assert contacts[0].size == 1024
        assert contacts[0].extra == {"phones": ["123"], "photo_uri": "content://p/1"}

    def test_messages_json(self):
        messages = parse_messages_json([
            {"id": "9", "address": "555", "body": "hi", "date": 1700000000000, "isRead": 1},
            {"id": "10", "address": "555"},
        ])
        assert len(messages) == 1
        assert messages[0].extra["is_read"] is True
        assert messages[0].display_name == "Message from 555"
