import configparser
import io
import random
import threading
import unittest
import unittest.mock

import greylist
import lists

NOW = 1600000000


def make_request(now=NOW, address="192.0.2.1", sender="foo@dom1.example.com",
                 recipient="bar@dom2.example.com", helo="mx.dom1.example.com",
                 pre_approved=False, session_id="s1", token="t1"):
    return greylist.Request(
        session_id=session_id,
        token=token,
        address=address,
        helo=helo,
        sender=sender,
        sender_domain=greylist.sender_domain(sender, helo),
        recipient=recipient,
        pre_approved=pre_approved,
        now=now)


class TestGreylist(unittest.TestCase):
    def setUp(self):
        self.lists = lists.Lists(greyexp=14400, whiteexp=2592000)
        self.spf = unittest.mock.Mock(return_value=False)
        self.engine = greylist.Greylist(
            self.lists,
            spf_check=self.spf,
            passtime=300,
            greyexp=14400,
            whiteexp=2592000)
        self.key = lists.greylist_ip_key(
            "192.0.2.1", "foo@dom1.example.com", "bar@dom2.example.com")

    def process(self, **kwargs):
        return self.engine.process_request(make_request(**kwargs))

    def test_first_sighting(self):
        self.assertEqual(
            (greylist.REJECTED_TEMPORARY, False),
            self.process())

        self.assertSequenceEqual(
            [(self.key, NOW)],
            self.lists.greylist_src.items())
        self.assertEqual(0, len(self.lists.greylist_domain))
        self.assertEqual(0, len(self.lists.whitelist_src))

    def test_retry_too_fast(self):
        self.process()

        self.assertEqual(
            (greylist.REJECTED_TEMPORARY, False),
            self.process(now=NOW + 100))
        self.assertEqual(NOW + 100, self.lists.greylist_src.get(self.key))
        self.assertEqual(0, len(self.lists.whitelist_src))

    def test_retry_at_passtime(self):
        self.process()

        self.assertEqual(
            (greylist.REJECTED_TEMPORARY, False),
            self.process(now=NOW + 300))
        self.assertEqual(NOW + 300, self.lists.greylist_src.get(self.key))

    def test_promotion(self):
        self.process()

        self.assertEqual(
            (greylist.PROCEED, True),
            self.process(now=NOW + 310))
        self.assertEqual(
            NOW + 310,
            self.lists.whitelist_src.get(lists.ip_key("192.0.2.1")))

        # further mail from the address passes on the whitelist
        self.assertEqual(
            (greylist.PROCEED, False),
            self.process(now=NOW + 400, recipient="baz@dom2.example.com"))
        self.assertEqual(
            NOW + 400,
            self.lists.whitelist_src.get(lists.ip_key("192.0.2.1")))

    def test_retry_after_greylist_expiry(self):
        self.process()

        self.assertEqual(
            (greylist.REJECTED_TEMPORARY, False),
            self.process(now=NOW + 14400))
        self.assertEqual(NOW + 14400, self.lists.greylist_src.get(self.key))
        self.assertEqual(0, len(self.lists.whitelist_src))

    def test_same_second(self):
        self.assertEqual(
            (greylist.REJECTED_TEMPORARY, False),
            self.process())
        self.assertEqual(
            (greylist.REJECTED_TEMPORARY, False),
            self.process())
        self.assertEqual(NOW, self.lists.greylist_src.get(self.key))
        self.assertEqual(0, len(self.lists.whitelist_src))

    def test_whitelisted_address(self):
        self.lists.whitelist_src.set(lists.ip_key("192.0.2.1"), NOW - 1000)

        self.assertEqual(
            (greylist.PROCEED, False),
            self.process())
        self.assertEqual(
            NOW,
            self.lists.whitelist_src.get(lists.ip_key("192.0.2.1")))
        self.assertEqual(0, len(self.lists.greylist_src))
        self.spf.assert_not_called()

    def test_expired_whitelisted_address(self):
        self.lists.whitelist_src.set(lists.ip_key("192.0.2.1"), NOW)
        later = NOW + 2592000

        self.lists.expire(later)
        self.assertNotIn(lists.ip_key("192.0.2.1"), self.lists.whitelist_src)

        self.assertEqual(
            (greylist.REJECTED_TEMPORARY, False),
            self.process(now=later))
        self.assertEqual(later, self.lists.greylist_src.get(self.key))

    def test_pre_approved(self):
        self.lists.greylist_src.set(self.key, NOW)

        self.assertEqual(
            (greylist.PROCEED, False),
            self.process(pre_approved=True))
        self.assertEqual(NOW, self.lists.greylist_src.get(self.key))
        self.assertEqual(0, len(self.lists.whitelist_src))
        self.spf.assert_not_called()

    def test_static_domain(self):
        self.lists = lists.Lists(14400, 2592000, ["dom1.example.com"])
        self.engine.lists = self.lists

        self.assertEqual(
            (greylist.PROCEED, False),
            self.process())
        for store in self.lists:
            self.assertEqual(0, len(store))
        self.spf.assert_not_called()

    def test_spf_aware_greylisting(self):
        self.spf.return_value = True
        key = lists.greylist_domain_key(
            "dom1.example.com", "foo@dom1.example.com", "bar@dom2.example.com")

        self.assertEqual(
            (greylist.REJECTED_TEMPORARY, False),
            self.process())
        self.assertEqual(NOW, self.lists.greylist_domain.get(key))
        self.assertEqual(0, len(self.lists.greylist_src))

        # a different outbound host of the same domain counts as a retry
        self.assertEqual(
            (greylist.PROCEED, True),
            self.process(now=NOW + 310, address="192.0.2.99"))
        self.assertEqual(
            NOW + 310,
            self.lists.whitelist_domain.get(
                lists.domain_key("dom1.example.com")))
        self.assertEqual(0, len(self.lists.whitelist_src))
        self.spf.assert_called_with(
            "192.0.2.99", "mx.dom1.example.com", "foo@dom1.example.com")

    def test_whitelisted_domain(self):
        self.spf.return_value = True
        key = lists.domain_key("dom1.example.com")
        self.lists.whitelist_domain.set(key, NOW - 1000)

        self.assertEqual(
            (greylist.PROCEED, False),
            self.process())
        self.assertEqual(NOW, self.lists.whitelist_domain.get(key))
        self.assertEqual(0, len(self.lists.greylist_domain))
        self.assertEqual(1, self.spf.call_count)

    def test_whitelisted_domain_without_spf(self):
        key = lists.domain_key("dom1.example.com")
        self.lists.whitelist_domain.set(key, NOW - 1000)

        self.assertEqual(
            (greylist.REJECTED_TEMPORARY, False),
            self.process())
        self.assertEqual(NOW - 1000, self.lists.whitelist_domain.get(key))
        self.assertEqual(NOW, self.lists.greylist_src.get(self.key))
        self.assertEqual(1, self.spf.call_count)

    def test_expired_whitelisted_domain(self):
        self.spf.return_value = True
        key = lists.domain_key("dom1.example.com")
        self.lists.whitelist_domain.set(key, NOW - 2592000)

        self.assertEqual(
            (greylist.REJECTED_TEMPORARY, False),
            self.process())
        self.assertEqual(1, len(self.lists.greylist_domain))

    def test_whitelist_domain(self):
        self.engine.whitelist_domain("dom1.example.com", NOW)
        self.assertEqual(
            NOW,
            self.lists.whitelist_domain.get(
                lists.domain_key("dom1.example.com")))

    def test_concurrent_requests(self):
        addresses = ["198.51.100.{}".format(i) for i in range(1, 101)]

        def run(now, results):
            order = list(addresses)
            random.shuffle(order)
            threads = [
                threading.Thread(
                    target=lambda a=a: results.append(
                        self.process(now=now, address=a,
                                     session_id=a)[0]))
                for a in order
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        for _ in range(5):
            self.setUp()
            first = []
            run(NOW, first)
            self.assertEqual(len(addresses), len(first))
            self.assertTrue(
                all(v is greylist.REJECTED_TEMPORARY for v in first))
            self.assertEqual(len(addresses), len(self.lists.greylist_src))

            second = []
            run(NOW + 310, second)
            self.assertTrue(all(v is greylist.PROCEED for v in second))
            self.assertEqual(len(addresses), len(self.lists.whitelist_src))


class TestHelpers(unittest.TestCase):
    def test_sender_domain(self):
        self.assertEqual(
            "example.com",
            greylist.sender_domain("foo@example.com", "mx.example.net"))

    def test_sender_domain_falls_back_to_helo(self):
        self.assertEqual(
            "mx.example.net",
            greylist.sender_domain("postmaster", "mx.example.net"))
        self.assertEqual(
            "mx.example.net",
            greylist.sender_domain("", "mx.example.net"))

    def test_response_repr(self):
        self.assertEqual("PROCEED", str(greylist.PROCEED))
        self.assertEqual("<response=REJECTED_TEMPORARY>",
                         repr(greylist.REJECTED_TEMPORARY))


class TestConfig(unittest.TestCase):
    def test_defaults(self):
        config = greylist.load_config(io.StringIO(""))
        self.assertEqual(300, config["passtime"])
        self.assertEqual(14400, config["greyexp"])
        self.assertEqual(2592000, config["whiteexp"])
        self.assertIsNone(config["wl_ip"])
        self.assertIsNone(config["wl_domain"])
        self.assertEqual(60, config["sweep_interval"])

    def test_overrides(self):
        config = greylist.load_config(io.StringIO(
            "[DEFAULT]\n"
            "passtime = 60\n"
            "greyexp = 3600\n"
            "wl_domain = /etc/mail/domains\n"
            "spf_timeout = 5\n"))
        self.assertEqual(60, config["passtime"])
        self.assertEqual(3600, config["greyexp"])
        self.assertEqual("/etc/mail/domains", config["wl_domain"])
        self.assertEqual(5, config["spf_timeout"])

    def test_spf_timeout_must_be_a_number(self):
        with self.assertRaises(ValueError):
            greylist.load_config(io.StringIO(
                "[DEFAULT]\n"
                "spf_timeout = off\n"))

    def test_missing_section_header(self):
        with self.assertRaises(configparser.MissingSectionHeaderError):
            greylist.load_config(io.StringIO("passtime = 60\n"))

    def test_verify(self):
        greylist.verify_config(passtime=300, greyexp=14400, whiteexp=86400)
        with self.assertRaises(ValueError):
            greylist.verify_config(passtime=300, greyexp=300, whiteexp=86400)
        with self.assertRaises(ValueError):
            greylist.verify_config(passtime=-1, greyexp=300, whiteexp=86400)
        with self.assertRaises(ValueError):
            greylist.verify_config(passtime=1, greyexp=300, whiteexp=86400,
                                   workers=0)
