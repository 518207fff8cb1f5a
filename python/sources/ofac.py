"""OFAC Specially Designated Nationals list (sdn.xml)"""

from sources.xml_feed import XmlFeedJob


class OfacJob(XmlFeedJob):
    source = "ofac_xml"
    date_key = "publishDate"

    def feed_url(self) -> str:
        return self.config.sources.ofac_url
