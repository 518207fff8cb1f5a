"""UN Security Council consolidated list (legacy XML export)"""

from sources.xml_feed import XmlFeedJob


class UnJob(XmlFeedJob):
    source = "un_xml"
    date_key = "dateGenerated"

    def feed_url(self) -> str:
        return self.config.sources.un_url
