"""
tests/test_packets.py
=====================
Unit tests for packet framing and ASCII armor.

Run with:  python -m pytest tests/ -v
"""

import os, sys, unittest
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pgpseal import packets
from pgpseal.armor import BLOCK_MESSAGE, armor, crc24, dearmor, is_armored
from pgpseal.errors import MalformedKey, MalformedMessage


class TestLengths(unittest.TestCase):
    """New-format body length encoding (RFC 4880 4.2.2)."""

    def test_one_octet(self):
        self.assertEqual(packets.encode_length(0), b"\x00")
        self.assertEqual(packets.encode_length(191), b"\xbf")

    def test_two_octets(self):
        self.assertEqual(packets.encode_length(192), b"\xc0\x00")
        self.assertEqual(packets.encode_length(8383), b"\xdf\xff")

    def test_five_octets(self):
        self.assertEqual(packets.encode_length(8384), b"\xff\x00\x00\x20\xc0")

    def test_lengths_read_back(self):
        for n in (0, 1, 191, 192, 1000, 8383, 8384, 100_000):
            reader = packets.Reader(packets.encode_length(n))
            self.assertEqual(reader.new_length(), (n, False))


class TestFraming(unittest.TestCase):

    def test_packet_header(self):
        pkt = packets.packet(packets.TAG_LITERAL, b"abc")
        self.assertEqual(pkt, b"\xcb\x03abc")

    def test_read_new_format(self):
        data = packets.packet(1, b"x" * 300) + packets.packet(18, b"")
        result = list(packets.read_packets(data))
        self.assertEqual([p.tag for p in result], [1, 18])
        self.assertEqual(result[0].body, b"x" * 300)
        self.assertEqual(result[1].body, b"")

    def test_read_old_format(self):
        # Old-format tag 6, one-octet length
        data = bytes([0x80 | (6 << 2) | 0, 3]) + b"key"
        result = list(packets.read_packets(data))
        self.assertEqual(result, [packets.Packet(6, b"key")])

    def test_stream_small_body_uses_definite_length(self):
        framed = b"".join(packets.stream_packet(11, [b"hello", b" ", b"world"]))
        self.assertEqual(framed, packets.packet(11, b"hello world"))

    def test_stream_large_body_uses_partial_lengths(self):
        body = os.urandom(packets.PARTIAL_CHUNK * 2 + 1234)
        chunks = [body[i:i + 5000] for i in range(0, len(body), 5000)]
        framed = b"".join(packets.stream_packet(18, chunks))
        # partial length octet right after the tag
        self.assertEqual(framed[1], 0xE0 | packets.PARTIAL_POWER)
        result = list(packets.read_packets(framed))
        self.assertEqual(len(result), 1)
        self.assertEqual(result[0].body, body)

    def test_stream_exact_multiple_of_chunk_size(self):
        body = b"\x00" * (packets.PARTIAL_CHUNK * 2)
        framed = b"".join(packets.stream_packet(11, [body]))
        self.assertEqual(list(packets.read_packets(framed))[0].body, body)

    def test_truncated_packet_raises(self):
        data = packets.packet(2, b"x" * 50)[:20]
        with self.assertRaises(MalformedMessage):
            list(packets.read_packets(data))

    def test_custom_error_class(self):
        with self.assertRaises(MalformedKey):
            list(packets.read_packets(b"\x00\x01", MalformedKey))

    def test_invalid_header_bit(self):
        with self.assertRaises(MalformedMessage):
            list(packets.read_packets(b"\x3f\x00"))


class TestMPI(unittest.TestCase):

    def test_mpi_encoding(self):
        self.assertEqual(packets.mpi(1), b"\x00\x01\x01")
        self.assertEqual(packets.mpi(511), b"\x00\x09\x01\xff")
        self.assertEqual(packets.mpi(0), b"\x00\x00")

    def test_mpi_strips_leading_zeros(self):
        self.assertEqual(packets.mpi_from_bytes(b"\x00\x00\x80"), b"\x00\x08\x80")

    def test_mpi_bit_count_must_match_value(self):
        # 0x01ff needs 9 bits; 10 and 16 both claim two octets
        for header in (b"\x00\x0a", b"\x00\x10"):
            with self.subTest(header=header):
                with self.assertRaises(MalformedMessage):
                    packets.Reader(header + b"\x01\xff").mpi_bytes()

    def test_mpi_leading_zero_octet_rejected(self):
        with self.assertRaises(MalformedKey):
            packets.Reader(b"\x00\x10\x00\xff", MalformedKey).mpi()

    def test_mpi_zero_value(self):
        self.assertEqual(packets.Reader(b"\x00\x00").mpi(), 0)

    def test_mpi_round_trip_through_reader(self):
        value = int.from_bytes(os.urandom(256), "big") | 1
        self.assertEqual(packets.Reader(packets.mpi(value)).mpi(), value)


class TestSubpackets(unittest.TestCase):

    def test_parse_subpackets(self):
        area = packets.subpacket(2, b"\x00\x00\x00\x01") + packets.subpacket(0x80 | 27, b"\x03")
        self.assertEqual(packets.parse_subpackets(area), [(2, b"\x00\x00\x00\x01"), (27, b"\x03")])

    def test_zero_length_subpacket_rejected(self):
        with self.assertRaises(MalformedMessage):
            packets.parse_subpackets(b"\x00")


class TestArmor(unittest.TestCase):
    """ASCII armor encode / decode."""

    def test_crc24_of_empty_input_is_init_value(self):
        self.assertEqual(crc24(b""), 0xB704CE)

    def test_crc24_differs_for_different_data(self):
        self.assertNotEqual(crc24(b"a"), crc24(b"b"))

    def test_armor_layout(self):
        text = armor(os.urandom(200))
        lines = text.splitlines()
        self.assertEqual(lines[0], "-----BEGIN PGP MESSAGE-----")
        self.assertEqual(lines[-1], "-----END PGP MESSAGE-----")
        self.assertTrue(lines[-2].startswith("="))
        self.assertTrue(all(len(line) <= 64 for line in lines[2:-2]))

    def test_dearmor_round_trip(self):
        data = os.urandom(1000)
        block, payload = dearmor(armor(data, headers=[("Comment", "test")]))
        self.assertEqual(block, BLOCK_MESSAGE)
        self.assertEqual(payload, data)

    def test_dearmor_accepts_bytes_and_crlf(self):
        data = os.urandom(100)
        text = armor(data).replace("\n", "\r\n").encode("ascii")
        self.assertEqual(dearmor(text)[1], data)

    def test_checksum_mismatch(self):
        lines = armor(b"hello world, this is armored").splitlines()
        lines[-2] = "=AAAA"
        with self.assertRaises(MalformedMessage):
            dearmor("\n".join(lines))

    def test_missing_tail(self):
        text = armor(b"data").replace("-----END PGP MESSAGE-----", "")
        with self.assertRaises(MalformedMessage):
            dearmor(text)

    def test_not_armored(self):
        self.assertTrue(is_armored(b"  -----BEGIN PGP MESSAGE-----\n"))
        self.assertFalse(is_armored(b"\xc1\x02ab"))
        with self.assertRaises(MalformedMessage):
            dearmor("no armor here")


if __name__ == "__main__":
    unittest.main(verbosity=2)
